"""
Instrument sample loading and caching.

Samples are keyed by content, "{category}/{sample_key}" (e.g. "cello/Db3"),
so a cache outlives any single playback session. Loads already in
flight are shared: concurrent preloads of one key trigger one fetch.
"""
import asyncio
import logging
import urllib.error
import urllib.request
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Union

from audio.context import AudioContext
from audio.nodes import AudioBuffer
from core.constants import instrument_category, pitch_to_sample_key
from core.models import Note
from core.settings import SAMPLE_BASE_URL

_LOGGER = logging.getLogger(__name__)

SAMPLE_EXTENSIONS = (".mp3", ".ogg", ".flac", ".wav")


class SampleNotFoundError(LookupError):
    """The source has no sample for a (category, sample key)."""


class SampleSource(ABC):
    """Where encoded sample bytes come from."""

    @abstractmethod
    async def fetch(self, category: str, sample_key: str) -> bytes:
        """
        Fetch the encoded audio for one sample.

        Args:
            category: Sound-source name ("violin", "cello", ...)
            sample_key: Pitch in sample naming ("Db4", "A3", ...)

        Returns:
            Encoded audio bytes

        Raises:
            SampleNotFoundError: If the sample doesn't exist
        """


class HttpSampleSource(SampleSource):
    """Soundfont mirror laid out as {base_url}/{category}-mp3/{key}.mp3."""

    def __init__(self, base_url: str, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def url_for(self, category: str, sample_key: str) -> str:
        return f"{self.base_url}/{category}-mp3/{sample_key}.mp3"

    def _get(self, url: str) -> bytes:
        try:
            with urllib.request.urlopen(url, timeout=self.timeout) as response:
                return response.read()
        except urllib.error.HTTPError as e:
            if e.code == 404:
                raise SampleNotFoundError(url) from e
            raise

    async def fetch(self, category: str, sample_key: str) -> bytes:
        return await asyncio.to_thread(self._get, self.url_for(category, sample_key))


class DirectorySampleSource(SampleSource):
    """Local copy of the soundfont layout: {root}/{category}-mp3/{key}.{ext}."""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)

    def path_for(self, category: str, sample_key: str) -> Optional[Path]:
        folder = self.root / f"{category}-mp3"
        for ext in SAMPLE_EXTENSIONS:
            path = folder / f"{sample_key}{ext}"
            if path.is_file():
                return path
        return None

    async def fetch(self, category: str, sample_key: str) -> bytes:
        path = self.path_for(category, sample_key)
        if path is None:
            raise SampleNotFoundError(f"{category}/{sample_key} under {self.root}")
        return await asyncio.to_thread(path.read_bytes)


class SampleCache:
    """
    Decoded samples keyed by (instrument category, sample pitch).

    Write-once per key: a failed load leaves the key absent (no retry
    within the batch) and the scheduler falls back to synthesis.
    """

    def __init__(self, source: SampleSource):
        """
        Args:
            source: Where sample bytes are fetched from
        """
        self.source = source
        self._cache: Dict[str, AudioBuffer] = {}
        self._pending: Dict[str, "asyncio.Task[None]"] = {}

    @staticmethod
    def cache_key(instrument_id: str, pitch: str) -> str:
        return f"{instrument_category(instrument_id)}/{pitch_to_sample_key(pitch)}"

    def get(self, instrument_id: str, pitch: str) -> Optional[AudioBuffer]:
        """Cached sample for an instrument and pitch, or None."""
        return self._cache.get(self.cache_key(instrument_id, pitch))

    def __contains__(self, key: str) -> bool:
        return key in self._cache

    def __len__(self) -> int:
        return len(self._cache)

    async def preload(self, context: AudioContext, notes: Iterable[Note]):
        """
        Load samples for every non-rest note.

        Returns once every key has settled, loaded or failed. Never raises
        for a failed sample.

        Args:
            context: Context used to decode the audio
            notes: Notes about to be played
        """
        batch: Dict[str, tuple] = {}
        for note in notes:
            if note.is_rest:
                continue
            key = self.cache_key(note.instrument_id, note.pitch)
            if key in self._cache or key in batch:
                continue
            batch[key] = (instrument_category(note.instrument_id), pitch_to_sample_key(note.pitch))

        if not batch:
            return

        _LOGGER.debug("[SAMPLES] Preloading %d sample(s)", len(batch))
        await asyncio.gather(*(
            self._load(context, key, category, sample_key)
            for key, (category, sample_key) in batch.items()
        ))

    async def _load(self, context: AudioContext, key: str, category: str, sample_key: str):
        task = self._pending.get(key)
        if task is None:
            task = asyncio.ensure_future(self._fetch(context, key, category, sample_key))
            self._pending[key] = task
            task.add_done_callback(lambda done, key=key: self._forget(key, done))
        # A cancelled waiter must not cancel the shared load
        await asyncio.shield(task)

    def _forget(self, key: str, task: "asyncio.Task[None]"):
        if self._pending.get(key) is task:
            del self._pending[key]

    async def _fetch(self, context: AudioContext, key: str, category: str, sample_key: str):
        try:
            data = await self.source.fetch(category, sample_key)
            buffer = await asyncio.to_thread(context.decode_audio_data, data)
        except SampleNotFoundError:
            _LOGGER.warning("[SAMPLES] No sample for %s, will synthesize", key)
        except Exception as e:
            _LOGGER.warning("[SAMPLES] Failed to load %s: %s", key, e)
        else:
            self._cache[key] = buffer
            _LOGGER.debug("[SAMPLES] Loaded %s (%.2fs)", key, buffer.duration)


def create_sample_source(settings: Dict[str, Any]) -> SampleSource:
    """Sample source from the "samples" settings section (local dir wins)."""
    section = settings.get("samples", {})
    if section.get("local_dir"):
        return DirectorySampleSource(Path(section["local_dir"]).expanduser())
    return HttpSampleSource(section.get("base_url") or SAMPLE_BASE_URL)
