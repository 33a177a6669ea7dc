"""Editor activity heartbeats.

This package turns a noisy stream of editor "file touched" / "file saved"
notifications into an ordered, rate-limited stream of heartbeats and delivers
them, one at a time, to an external sender (wakatime-cli, ActivityWatch).
"""

__version__ = "0.1.0"
