import json

import numpy as np
import soundfile as sf

import main
from audio.samples import DirectorySampleSource
from core.models import Note
from core.persistence import SnapshotFile
from core.settings import HOME_ENV


def _write_sample(root, category, key, sample_rate=22050):
    folder = root / f"{category}-mp3"
    folder.mkdir(parents=True)
    t = np.arange(sample_rate // 2) / sample_rate
    sf.write(str(folder / f"{key}.wav"), (0.5 * np.sin(2 * np.pi * 440.0 * t)).astype(np.float32),
             sample_rate, format="WAV", subtype="FLOAT")


def _spy_fetches(monkeypatch):
    fetched = []
    original = DirectorySampleSource.fetch

    async def fetch(self, category, sample_key):
        fetched.append(f"{category}/{sample_key}")
        return await original(self, category, sample_key)

    monkeypatch.setattr(DirectorySampleSource, "fetch", fetch)
    return fetched


def test_render_uses_configured_sample_dir(tmp_path, monkeypatch, snapshot_factory):
    samples = tmp_path / "samples"
    _write_sample(samples, "violin", "A4")
    home = tmp_path / "home"
    home.mkdir()
    (home / "settings.json").write_text(json.dumps({"samples": {"local_dir": str(samples)}}))
    monkeypatch.setenv(HOME_ENV, str(home))
    fetched = _spy_fetches(monkeypatch)

    snapshot = snapshot_factory(notes=[Note("n", "violin1", "A4", 1, 1, "quarter")], tempo=120)
    path = SnapshotFile.save(snapshot, tmp_path / "score")
    output = tmp_path / "out.wav"

    assert main.main(["render", str(path), str(output)]) == 0
    assert fetched == ["violin/A4"]
    audio, sample_rate = sf.read(str(output))
    assert sample_rate == 44100
    assert np.max(np.abs(audio)) > 0.01


def test_samples_dir_flag_overrides_settings(tmp_path, monkeypatch, snapshot_factory):
    flagged = tmp_path / "flagged"
    _write_sample(flagged, "cello", "D3")
    home = tmp_path / "home"
    home.mkdir()
    (home / "settings.json").write_text(
        json.dumps({"samples": {"local_dir": str(tmp_path / "elsewhere")}}))
    monkeypatch.setenv(HOME_ENV, str(home))
    fetched = _spy_fetches(monkeypatch)

    snapshot = snapshot_factory(notes=[Note("n", "cello", "D3", 1, 1, "half")])
    path = SnapshotFile.save(snapshot, tmp_path / "score")

    args = ["--samples-dir", str(flagged), "render", str(path), str(tmp_path / "out.wav")]
    assert main.main(args) == 0
    assert fetched == ["cello/D3"]


def test_missing_score_reports_error(tmp_path, monkeypatch, capsys):
    monkeypatch.setenv(HOME_ENV, str(tmp_path))
    assert main.main(["render", str(tmp_path / "nope.ensemble"), str(tmp_path / "out.wav")]) == 1
    assert "[ERROR]" in capsys.readouterr().out
