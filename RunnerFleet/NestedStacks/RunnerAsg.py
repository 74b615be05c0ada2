"""
This module contains the RunnerAsg NestedStack class.
"""

from aws_cdk import (
    NestedStack,
    aws_ec2 as ec2,
    aws_iam as iam,
    aws_sns as sns,
    aws_autoscaling as autoscaling,
)
from constructs import Construct

from cdk_nag import NagSuppressions


class RunnerAsg(NestedStack):
    """
    This sets up the "hardware" of the runners: The image, the
    first-boot script, and the group that scales them.
    """
    def __init__(
        self,
        scope: Construct,
        vpc: ec2.Vpc,
        sg_instances: ec2.SecurityGroup,
        instance_role: iam.Role,
        sns_notify_topic: sns.Topic,
        runner_config: dict,
        drain_config: dict,
        **kwargs,
    ) -> None:
        super().__init__(scope, "RunnerAsgNestedStack", **kwargs)

        ## The AMI. Owner keeps the SSM parameter pointed at the newest one:
        # https://docs.aws.amazon.com/cdk/api/v2/docs/aws-cdk-lib.aws_ec2.MachineImage.html#static-fromwbrssmwbrparameterparametername-options
        self.machine_image = ec2.MachineImage.from_ssm_parameter(
            runner_config["AmiSsmParameter"],
            os=ec2.OperatingSystemType.LINUX,
        )

        ### For Running Commands on the instance when it starts up:
        # https://docs.aws.amazon.com/cdk/api/v2/docs/aws-cdk-lib.aws_ec2.UserData.html
        self.user_data = ec2.UserData.for_linux()
        self.user_data.add_commands(
            # The drain script is ran from here, make sure it exists:
            f'mkdir -p "{drain_config["WorkingDirectory"]}"',
            # Whatever installs/registers the runner:
            *runner_config["UserData"],
        )

        ## Contains the configuration information to launch an instance, and stores launch parameters
        # https://docs.aws.amazon.com/cdk/api/v2/docs/aws-cdk-lib.aws_ec2.LaunchTemplate.html
        self.launch_template = ec2.LaunchTemplate(
            self,
            "RunnerLaunchTemplate",
            instance_type=ec2.InstanceType(runner_config["InstanceType"]),
            machine_image=self.machine_image,
            security_group=sg_instances,
            user_data=self.user_data,
            # Creates the instance profile for us:
            role=instance_role,
            ## Console recommends to enable IMDSv2:
            require_imdsv2=True,
        )

        ## A Fleet represents a managed set of EC2 instances:
        # https://docs.aws.amazon.com/cdk/api/v2/docs/aws-cdk-lib.aws_autoscaling.AutoScalingGroup.html
        self.auto_scaling_group = autoscaling.AutoScalingGroup(
            self,
            "RunnerAsg",
            vpc=vpc,
            # Runners only need outbound, keep them off the public subnets:
            vpc_subnets=ec2.SubnetSelection(subnet_type=ec2.SubnetType.PRIVATE_WITH_EGRESS),
            launch_template=self.launch_template,
            min_capacity=runner_config["MinSize"],
            max_capacity=runner_config["MaxSize"],
            desired_capacity=runner_config["DesiredCapacity"],
            ## Notifications:
            # https://docs.aws.amazon.com/cdk/api/v2/docs/aws-cdk-lib.aws_autoscaling.AutoScalingGroup.html#notifications
            notifications=[
                # Let the admin know if something goes wrong:
                autoscaling.NotificationConfiguration(topic=sns_notify_topic, scaling_events=autoscaling.ScalingEvents.ERRORS),
            ],
        )

        #####################
        ### cdk_nag stuff ###
        #####################
        # Do at very end, they have to "suppress" after everything's created to work.
        NagSuppressions.add_resource_suppressions(
            self.auto_scaling_group,
            [
                {
                    "id": "AwsSolutions-AS3",
                    "reason": "Only ERROR notifications go to the admin. Scale-in is already logged by the drain hook.",
                },
                {
                    "id": "AwsSolutions-EC26",
                    "reason": "Runners are disposable, nothing on the root volume outlives the instance.",
                },
            ],
            apply_to_children=True,
        )
