"""
convoloop
=========

Voice-driven turn-taking controller for a human talking to a remote
dialogue agent over a single audio channel.

Features:
- Voice Activity Detection (VAD) driven end-of-turn detection
- Single-instance capture and playback with barge-in
- Deterministic turn state machine with self-healing recovery
- HTTP control surface for an external UI

Version: 1.0.0
"""

__version__ = "1.0.0"
__license__ = "MIT"
