"""
This is the logic for RunnerFleetStack.
"""

import re

from aws_cdk import (
    Stack,
    Tags,
    CfnOutput,
    aws_ec2 as ec2,
    aws_sns as sns,
    aws_sns_subscriptions as sns_subscriptions,
)
from constructs import Construct
from cdk_nag import NagSuppressions

## Import Nested Stacks:
from RunnerFleet import NestedStacks


class RunnerFleetStack(Stack):
    """
    Everything for one fleet of self-hosted CI runners: The network,
    the instances, and the hook that drains them on scale-in. It is
    broken into nested stacks for easier management of each component.
    """
    ## This makes the stack names of NestedStacks MUCH more readable:
    # (From: https://github.com/aws/aws-cdk/issues/18053 and https://github.com/aws/aws-cdk/issues/19099)
    def get_logical_id(self, element):
        if "NestedStackResource" in element.node.id:
            match = re.search(r'([a-zA-Z0-9]+)\.NestedStackResource', element.node.id)
            if match:
                # Returns "DrainHookNestedStack" instead of "DrainHookNestedStackDrainHookNestedStackResource..."
                return match.group(1)
            # Fail fast. If the logical_id ever changes on a existing stack, you replace everything.
            raise RuntimeError(f"Could not find 'NestedStackResource' in {element.node.id}. Did a CDK update finally fix NestedStack names?")
        return super().get_logical_id(element)

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        fleet_id: str,
        config: dict,
        **kwargs,
    ) -> None:
        super().__init__(scope, construct_id, **kwargs)

        #################
        ### VPC STUFF ###
        #################

        ### Public subnets for the NATs, private ones for the instances:
        # https://docs.aws.amazon.com/cdk/api/v2/docs/aws-cdk-lib.aws_ec2.Vpc.html
        self.vpc = ec2.Vpc(
            self,
            "Vpc",
            ip_addresses=ec2.IpAddresses.cidr(config["Vpc"]["Cidr"]),
            max_azs=config["Vpc"]["MaxAZs"],
            nat_gateways=config["Vpc"]["NatGateways"],
            subnet_configuration=[
                # A /26 split four ways (2 AZs x 2 types) is a /28 each:
                ec2.SubnetConfiguration(
                    name=f"private-{fleet_id}-sn",
                    subnet_type=ec2.SubnetType.PRIVATE_WITH_EGRESS,
                    cidr_mask=28,
                ),
                ec2.SubnetConfiguration(
                    name=f"public-{fleet_id}-sn",
                    subnet_type=ec2.SubnetType.PUBLIC,
                    cidr_mask=28,
                ),
            ],
            restrict_default_security_group=True,
        )
        Tags.of(self.vpc).add("Name", fleet_id)

        ########################
        ### SNS Notify STUFF ###
        ########################

        ## Create an SNS Topic for notifications:
        # https://docs.aws.amazon.com/cdk/api/v2/docs/aws-cdk-lib.aws_sns.Topic.html
        self.sns_notify_topic = sns.Topic(
            self,
            "SnsNotifyTopic",
            display_name=f"{construct_id}-sns-notify-topic",
            enforce_ssl=True,
        )
        ## Only ASG errors go to this topic, so it's safe to page a human with it:
        # https://docs.aws.amazon.com/cdk/api/v2/docs/aws-cdk-lib.aws_sns_subscriptions.EmailSubscription.html
        for email in config["AlertSubscription"]["Email"]:
            self.sns_notify_topic.add_subscription(sns_subscriptions.EmailSubscription(email))

        ########################
        ### Core Fleet Stack ###
        ########################

        ### All the info for the Security Group Stuff
        self.sg_nested_stack = NestedStacks.SecurityGroups(
            self,
            description=f"Security Group Logic for {construct_id}",
            fleet_construct_id=construct_id,
            vpc=self.vpc,
            vpc_cidr=config["Vpc"]["Cidr"],
            fleet_id=fleet_id,
            ingress_ports=config["Runner"]["IngressPorts"],
        )

        ### All the info for the Instance Permissions
        self.role_nested_stack = NestedStacks.RunnerRole(
            self,
            description=f"Instance Role Logic for {construct_id}",
            fleet_id=fleet_id,
            managed_policies=config["Runner"]["ManagedPolicies"],
        )

        ### All the info for the Launch Template and ASG Stuff
        self.runner_asg_nested_stack = NestedStacks.RunnerAsg(
            self,
            description=f"Runner ASG Logic for {construct_id}",
            vpc=self.vpc,
            sg_instances=self.sg_nested_stack.sg_instances,
            instance_role=self.role_nested_stack.instance_role,
            sns_notify_topic=self.sns_notify_topic,
            runner_config=config["Runner"],
            drain_config=config["Drain"],
        )

        ### All the info for draining runners on scale-in
        self.drain_hook_nested_stack = NestedStacks.DrainHook(
            self,
            description=f"Scale-in Drain Logic for {construct_id}",
            fleet_id=fleet_id,
            auto_scaling_group=self.runner_asg_nested_stack.auto_scaling_group,
            drain_config=config["Drain"],
        )

        ### Jump hosts, if you want them:
        self.bastion_nested_stack = None
        if config["Bastion"]["Enabled"]:
            self.bastion_nested_stack = NestedStacks.Bastion(
                self,
                description=f"Bastion Logic for {construct_id}",
                fleet_id=fleet_id,
                vpc=self.vpc,
                sg_instances=self.sg_nested_stack.sg_instances,
                instance_role=self.role_nested_stack.instance_role,
                machine_image=self.runner_asg_nested_stack.machine_image,
                bastion_config=config["Bastion"],
            )

        ###############
        ### Outputs ###
        ###############
        CfnOutput(
            self,
            "RunnerAsgName",
            value=self.runner_asg_nested_stack.auto_scaling_group.auto_scaling_group_name,
            description="The ASG the runners live in.",
        )
        CfnOutput(
            self,
            "DrainLambdaName",
            value=self.drain_hook_nested_stack.lambda_drain_hook.function_name,
            description="Check this lambda's logs to see how each scale-in drain went.",
        )

        #####################
        ### cdk_nag stuff ###
        #####################
        # Do at very end, they have to "suppress" after everything's created to work.
        NagSuppressions.add_resource_suppressions(self.sns_notify_topic, [
            {
                "id": "AwsSolutions-SNS2",
                "reason": "KMS is costing ~3/month, and this isn't sensitive data anyways.",
            },
        ])

        NagSuppressions.add_resource_suppressions(
            self.vpc,
            [
                {
                    "id": "AwsSolutions-VPC7",
                    "reason": "Flow logs cost a lot, and runners don't need them.",
                },
            ],
        )
