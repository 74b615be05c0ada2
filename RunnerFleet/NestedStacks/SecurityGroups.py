"""
This module contains the SecurityGroups NestedStack class.
"""

from aws_cdk import (
    NestedStack,
    Tags,
    aws_ec2 as ec2,
)
from constructs import Construct


### Nested Stack info:
# https://docs.aws.amazon.com/cdk/api/v2/docs/aws-cdk-lib.NestedStack.html
class SecurityGroups(NestedStack):
    """
    This sets up the Security Group shared by the runners and
    the bastion hosts.
    """
    def __init__(
        self,
        scope: Construct,
        fleet_construct_id: str,
        vpc: ec2.Vpc,
        vpc_cidr: str,
        fleet_id: str,
        ingress_ports: list,
        **kwargs,
    ) -> None:
        super().__init__(scope, "SecurityGroupsNestedStack", **kwargs)

        ## Security Group for the instances:
        # https://docs.aws.amazon.com/cdk/api/v2/docs/aws-cdk-lib.aws_ec2.SecurityGroup.html
        self.sg_instances = ec2.SecurityGroup(
            self,
            "SgInstances",
            vpc=vpc,
            description=f"({fleet_id}): Allow all ports from inside the VPC",
            # CI jobs pull from anywhere:
            allow_all_outbound=True,
        )
        # Create a name of `<StackName>/sg-instances` to find it easier:
        Tags.of(self.sg_instances).add("Name", f"{fleet_construct_id}/sg-instances")

        ## Anything inside the VPC can talk to the instances:
        self.sg_instances.add_ingress_rule(
            ec2.Peer.ipv4(vpc_cidr),
            ec2.Port.all_traffic(),
            description="Allow all traffic IN from inside the VPC",
        )

        ## And the public ports (SSH, HTTP, HTTPS by default):
        for port in ingress_ports:
            self.sg_instances.add_ingress_rule(
                ec2.Peer.any_ipv4(),
                ec2.Port.tcp(port),
                description=f"Allow tcp traffic IN on {port}",
            )
