"""
Core data structures for Ensemble.

Modules:
- models: Immutable data structures (Score, Note, ScoreSnapshot, etc.)
- signature: Effective key/time/tempo per measure
- constants: Musical constants (durations, dynamics, pitch tables)
- settings: User settings (~/.ensemble/settings.json)
- persistence: Snapshot file I/O (.ensemble format)
"""
