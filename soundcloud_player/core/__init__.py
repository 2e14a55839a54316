"""
Core playback engine.

`PlaybackSession` owns the queue and the state machine and drives one track
at a time through resolution, buffering and playback. `PlayerThread` runs a
session on its own event loop and bridges commands and events to callers on
other threads.
"""
