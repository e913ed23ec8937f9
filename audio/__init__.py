"""
Audio layer for Ensemble.

Modules:
- context: Audio clock, node factory and output stream
- nodes / params: Graph nodes and automatable parameters
- dsp: DSP utilities (filters, compressor kernel, reverb impulse)
- graph: Master bus (compressor + convolution reverb)
- samples: Sample sources and the deduplicating sample cache
- scheduler: Measure timeline and per-note scheduling
- playhead: Playhead polling loop
- engine: Playback engine (play/stop, mute/solo, offline render)
"""
