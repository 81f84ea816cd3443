"""MiningHQ Miner Manager - installs and removes the MiningHQ rig services."""

__version__ = "0.1.0"
