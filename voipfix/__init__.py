"""Audio-recovery controller for devices that mute or misroute VoIP and media audio."""

__version__ = "1.0.0"
