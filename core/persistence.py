"""
Score snapshot file I/O.

File formats:
- .ensemble: MessagePack binary (fast, compact), written by SnapshotFile.save
- .json: the data-access layer's /api/score payload, read-only
"""
import json
from pathlib import Path
from typing import Union

import msgpack

from core.models import ScoreSnapshot

FORMAT_VERSION = "1.0.0"


class SnapshotFile:
    """Handles score snapshot file I/O."""

    @staticmethod
    def save(snapshot: ScoreSnapshot, path: Union[str, Path]) -> Path:
        """
        Save snapshot to a .ensemble file.

        Args:
            snapshot: Snapshot to save
            path: Destination file path

        Returns:
            Path actually written (with .ensemble suffix)

        Raises:
            IOError: If save fails
        """
        path = Path(path)
        if path.suffix != ".ensemble":
            path = path.with_suffix(".ensemble")

        try:
            path.parent.mkdir(parents=True, exist_ok=True)

            data = snapshot.to_dict()
            data["version"] = FORMAT_VERSION

            packed_data = msgpack.packb(data, use_bin_type=True)
            with open(path, "wb") as f:
                f.write(packed_data)

        except (OSError, TypeError, ValueError) as e:
            raise IOError(f"Failed to save snapshot to {path}: {e}") from e

        return path

    @staticmethod
    def load(path: Union[str, Path]) -> ScoreSnapshot:
        """
        Load snapshot from a .ensemble or .json file.

        Args:
            path: Source file path

        Returns:
            Loaded snapshot

        Raises:
            IOError: If the file cannot be read
            ValueError: If the file format or contents are invalid
        """
        path = Path(path)
        if not path.exists():
            raise IOError(f"Snapshot file not found: {path}")

        try:
            if path.suffix == ".json":
                with open(path, "r", encoding="utf-8") as f:
                    data = json.load(f)
            else:
                with open(path, "rb") as f:
                    data = msgpack.unpackb(f.read(), raw=False)

                if not isinstance(data, dict):
                    raise ValueError(f"Invalid snapshot file format: {path}")
                version = str(data.get("version", "unknown"))
                if not version.startswith("1."):
                    raise ValueError(f"Incompatible snapshot version: {version}. Expected 1.x")

        except OSError as e:
            raise IOError(f"Failed to load snapshot from {path}: {e}") from e
        except (msgpack.exceptions.ExtraData, msgpack.exceptions.UnpackException,
                json.JSONDecodeError) as e:
            raise ValueError(f"Invalid snapshot file format: {path}: {e}") from e

        if not isinstance(data, dict):
            raise ValueError(f"Invalid snapshot file format: {path}")

        try:
            return ScoreSnapshot.from_dict(data)
        except (KeyError, TypeError) as e:
            raise ValueError(f"Invalid snapshot contents in {path}: {e}") from e
