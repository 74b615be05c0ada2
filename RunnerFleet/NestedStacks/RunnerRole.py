"""
This module contains the RunnerRole NestedStack class.
"""

from aws_cdk import (
    NestedStack,
    aws_iam as iam,
)
from constructs import Construct

from cdk_nag import NagSuppressions


class RunnerRole(NestedStack):
    """
    The permissions the runners (and bastion hosts) get on the instance.
    """
    def __init__(
        self,
        scope: Construct,
        fleet_id: str,
        managed_policies: list,
        **kwargs,
    ) -> None:
        super().__init__(scope, "RunnerRoleNestedStack", **kwargs)

        ## Permissions for inside the instance:
        # https://docs.aws.amazon.com/cdk/api/v2/docs/aws-cdk-lib.aws_iam.Role.html
        self.instance_role = iam.Role(
            self,
            "RunnerInstanceRole",
            assumed_by=iam.ServicePrincipal("ec2.amazonaws.com"),
            description=f"({fleet_id}): Permissions for the CI runners",
        )

        ## Attach each managed policy from the config:
        #   (AmazonSSMManagedInstanceCore is always in here, the drain hook needs it)
        for policy_name in managed_policies:
            self.instance_role.add_managed_policy(
                iam.ManagedPolicy.from_aws_managed_policy_name(policy_name),
            )

        #####################
        ### cdk_nag stuff ###
        #####################
        # Do at very end, they have to "suppress" after everything's created to work.
        NagSuppressions.add_resource_suppressions(
            self.instance_role,
            [
                {
                    "id": "AwsSolutions-IAM4",
                    "reason": "The runners build and push anything CI asks them to. The managed policies are set in the config.",
                },
            ],
        )
