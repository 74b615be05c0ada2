"""
This module contains the Bastion NestedStack class.
"""

from aws_cdk import (
    NestedStack,
    Tags,
    aws_ec2 as ec2,
    aws_iam as iam,
)
from constructs import Construct

from cdk_nag import NagSuppressions


class Bastion(NestedStack):
    """
    Jump hosts into the private subnets, one per subnet. They're
    reached through SSM Session Manager, not through a public IP.
    """
    def __init__(
        self,
        scope: Construct,
        fleet_id: str,
        vpc: ec2.Vpc,
        sg_instances: ec2.SecurityGroup,
        instance_role: iam.Role,
        machine_image: ec2.IMachineImage,
        bastion_config: dict,
        **kwargs,
    ) -> None:
        super().__init__(scope, "BastionNestedStack", **kwargs)

        self.instances = []
        for index, subnet in enumerate(vpc.private_subnets):
            instance_name = f"{fleet_id}-bastion-{index}"
            # https://docs.aws.amazon.com/cdk/api/v2/docs/aws-cdk-lib.aws_ec2.Instance.html
            instance = ec2.Instance(
                self,
                f"Bastion{index}",
                instance_name=instance_name,
                instance_type=ec2.InstanceType(bastion_config["InstanceType"]),
                machine_image=machine_image,
                vpc=vpc,
                vpc_subnets=ec2.SubnetSelection(subnets=[subnet]),
                security_group=sg_instances,
                role=instance_role,
                require_imdsv2=True,
            )
            Tags.of(instance).add("Role", "bastion")
            self.instances.append(instance)

        #####################
        ### cdk_nag stuff ###
        #####################
        # Do at very end, they have to "suppress" after everything's created to work.
        for instance in self.instances:
            NagSuppressions.add_resource_suppressions(
                instance,
                [
                    {
                        "id": "AwsSolutions-EC28",
                        "reason": "Jump hosts, nothing to monitor in detail.",
                    },
                    {
                        "id": "AwsSolutions-EC29",
                        "reason": "Jump hosts are disposable, termination protection just gets in the way.",
                    },
                ],
            )
