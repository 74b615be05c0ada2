"""
The different components of the runner fleet stack, broken
apart to keep things manageable.
"""

from .Bastion import Bastion
from .DrainHook import DrainHook
from .RunnerAsg import RunnerAsg
from .RunnerRole import RunnerRole
from .SecurityGroups import SecurityGroups
