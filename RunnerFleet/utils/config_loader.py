"""
config_loader.py

Reads the fleet config file, and runs it through the schema so the stacks
only ever see validated values (with defaults filled in).
"""

## Using this for the config, so you can have BOTH yaml and Env Vars:
# https://github.com/mkaranasou/pyaml_env
from pyaml_env import parse_config

from .fleet_config_parser import fleet_config_schema


def _parse_config(path: str) -> dict:
    " Read the raw yaml, substituting any env vars "
    # default_value: Dependabot PR's can't read secrets. Give variables
    #    a default value since most will be blank for the synth.
    config = parse_config(path, default_value="UNDECLARED")
    # An empty file comes back as None:
    return config or {}

def load_fleet_config(path: str) -> dict:
    " Parser/Loader for the runner fleet stack "
    return fleet_config_schema().validate(_parse_config(path))
