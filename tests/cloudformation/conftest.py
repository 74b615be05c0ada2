from dataclasses import dataclass

import pytest
import aws_cdk as cdk
from aws_cdk.assertions import Template

from RunnerFleet.runner_fleet_stack import RunnerFleetStack

from tests.configs import (
    ConfigInfo,
    FLEET_MINIMAL,
    FLEET_BASTION,
)


@dataclass
class CdkApp():
    def __init__(
        self,
        fleet_config: ConfigInfo=FLEET_MINIMAL,
    ) -> None:
        self.fleet_id = "test-fleet"
        self.config = fleet_config.create_config()
        self.app = cdk.App()
        ## Stacks:
        self.fleet_stack = RunnerFleetStack(
            self.app,
            "TestFleet-RunnerFleet",
            fleet_id=self.fleet_id,
            config=self.config,
        )
        ## Templates:
        # You can't modify the stack after you create the template (It gets synthed),
        # So create them here:
        self.fleet_template = Template.from_stack(self.fleet_stack)
        # And it's nested stacks:
        self.sg_template = Template.from_stack(self.fleet_stack.sg_nested_stack)
        self.role_template = Template.from_stack(self.fleet_stack.role_nested_stack)
        self.runner_asg_template = Template.from_stack(self.fleet_stack.runner_asg_nested_stack)
        self.drain_hook_template = Template.from_stack(self.fleet_stack.drain_hook_nested_stack)
        self.bastion_template = None
        if self.fleet_stack.bastion_nested_stack is not None:
            self.bastion_template = Template.from_stack(self.fleet_stack.bastion_nested_stack)

@pytest.fixture(scope="session")
def minimal_app(cdk_app):
    return cdk_app(fleet_config=FLEET_MINIMAL)

@pytest.fixture(scope="session")
def bastion_app(cdk_app):
    return cdk_app(fleet_config=FLEET_BASTION)

@pytest.fixture(scope="session")
def cdk_app():
    return CdkApp
