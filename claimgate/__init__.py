"""claimgate — plugin-gated claim fulfillment engine."""

from claimgate.startup.bootstrap import build_engine

__all__ = ["build_engine"]
