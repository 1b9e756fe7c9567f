"""Queue and run oref0 autotune analyses against Nightscout sites."""

__version__ = "0.3.0"
