"""TCP port reachability monitoring with cooldown-gated webhook alerts."""

__version__ = "2.2.6"
