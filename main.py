"""
Ensemble - orchestral score playback
Main entry point
"""
import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

import soundfile as sf

from audio.dsp import linear_to_db, peak_level
from audio.engine import PlaybackEngine, render_snapshot
from audio.playhead import PlaybackTick
from audio.samples import DirectorySampleSource, SampleCache, create_sample_source
from core.models import ScoreSnapshot
from core.persistence import SnapshotFile
from core.settings import load_settings


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ensemble", description="Play or render an orchestral score.")
    parser.add_argument("--samples-dir", type=Path, default=None,
                        help="Local sample directory ({category}-mp3/{pitch}.mp3 layout)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    play = subparsers.add_parser("play", help="Play a score through the audio device")
    play.add_argument("snapshot", type=Path, help=".ensemble or .json score file")
    play.add_argument("--from-measure", type=int, default=1)
    play.add_argument("--solo", default=None, help="Only play this instrument")
    play.add_argument("--mute", action="append", default=[], help="Mute an instrument (repeatable)")

    render = subparsers.add_parser("render", help="Render a score to a WAV file")
    render.add_argument("snapshot", type=Path, help=".ensemble or .json score file")
    render.add_argument("output", type=Path, help="Output .wav path")
    render.add_argument("--from-measure", type=int, default=1)
    render.add_argument("--solo", default=None)
    render.add_argument("--mute", action="append", default=[])
    return parser


def _print_tick(tick: PlaybackTick):
    if tick.stopped:
        print("\r[PLAYHEAD] stopped" + " " * 20)
        return
    print(f"\r[PLAYHEAD] measure {tick.measure:>3}  {tick.beat_fraction:5.1%}", end="", flush=True)


def _sample_cache(args, settings) -> SampleCache:
    """--samples-dir wins over the configured source."""
    if args.samples_dir:
        return SampleCache(DirectorySampleSource(args.samples_dir))
    return SampleCache(create_sample_source(settings))


async def _play(snapshot: ScoreSnapshot, args, settings) -> int:
    engine = PlaybackEngine(samples=_sample_cache(args, settings), settings=settings)
    engine.on_playback_tick = _print_tick
    engine.solo_instrument = args.solo
    engine.muted_instruments.update(args.mute)

    try:
        session = await engine.play(snapshot, args.from_measure)
        if session is None:
            print("[ERROR] Playback could not start")
            return 1
        while engine.is_playing:
            await asyncio.sleep(0.1)
        # Let the reverb tail ring out
        await asyncio.sleep(1.0)
    finally:
        engine.close()
    return 0


def _render(snapshot: ScoreSnapshot, args, settings) -> int:
    audio = render_snapshot(
        snapshot,
        args.from_measure,
        samples=_sample_cache(args, settings),
        sample_rate=settings["audio"]["sample_rate"],
        solo=args.solo,
        muted=args.mute,
    )
    sample_rate = settings["audio"]["sample_rate"]
    sf.write(str(args.output), audio, sample_rate)
    print(f"[RENDER] Wrote {len(audio) / sample_rate:.2f}s to {args.output} "
          f"(peak {linear_to_db(peak_level(audio)):.1f} dBFS)")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Launch Ensemble from the command line."""
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    settings = load_settings()
    try:
        snapshot = SnapshotFile.load(args.snapshot)
    except (IOError, ValueError) as e:
        print(f"[ERROR] Failed to load score: {e}")
        return 1
    print(f"[OPEN SCORE] Loaded: {snapshot.score.title} ({len(snapshot.notes)} notes)")

    if args.command == "render":
        return _render(snapshot, args, settings)

    try:
        return asyncio.run(_play(snapshot, args, settings))
    except KeyboardInterrupt:
        print("\n[EXIT] Interrupted")
        return 130


if __name__ == "__main__":
    sys.exit(main())
