"""
Helpers shared by the stacks, mostly for loading the config file.
"""

from .config_loader import load_fleet_config
