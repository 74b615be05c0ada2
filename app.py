#!/usr/bin/env python3

"""
CDK Application for a fleet of self-hosted CI runners in AWS
"""

import os

from aws_cdk import (
    # Aspects,
    App,
    Environment,
    Tags,
)
# import cdk_nag

from RunnerFleet.runner_fleet_stack import RunnerFleetStack
from RunnerFleet.utils import load_fleet_config


# https://docs.aws.amazon.com/cdk/api/v2/docs/aws-cdk-lib.App.html
app = App()
FLEET_ID_TAG_NAME = "FleetId"
### TODO: Finish going through all the cdk_nag checks:
# Aspects.of(app).add(cdk_nag.AwsSolutionsChecks(verbose=True))

# Lets you reference self.account and self.region in your CDK code
# if you need to:
main_env = Environment(
    account=os.getenv('CDK_DEFAULT_ACCOUNT'),
    region=os.getenv('CDK_DEFAULT_REGION'),
)

###################
### Fleet Stack ###
###################
file_path = app.node.try_get_context("config-file") or "./runner-fleet-config.yaml"
fleet_config = load_fleet_config(file_path)
# You can override fleet_id if you need to:
fleet_id = app.node.try_get_context("fleet-id")
if not fleet_id:
    fleet_id = os.path.basename(os.path.splitext(file_path)[0])
fleet_id = fleet_id.lower()
# For stack names, turn "runner-fleet-config" into "RunnerFleetConfig":
fleet_id_alpha = "".join(e for e in fleet_id.title() if e.isalnum())
Tags.of(app).add(FLEET_ID_TAG_NAME, fleet_id)

runner_fleet_stack = RunnerFleetStack(
    app,
    f"{fleet_id_alpha}-RunnerFleet",
    description=f"Self-hosted CI runners for '{fleet_id}', drained through SSM on scale-in.",
    env=main_env,
    fleet_id=fleet_id,
    config=fleet_config,
)

app.synth()
