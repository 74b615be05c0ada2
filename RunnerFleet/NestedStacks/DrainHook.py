"""
This module contains the DrainHook NestedStack class.
"""

from aws_cdk import (
    NestedStack,
    Duration,
    RemovalPolicy,
    aws_lambda,
    aws_sns as sns,
    aws_sns_subscriptions as sns_subscriptions,
    aws_iam as iam,
    aws_logs as logs,
    aws_autoscaling as autoscaling,
    aws_autoscaling_hooktargets as hooktargets,
)
from constructs import Construct
from cdk_nag import NagSuppressions

from RunnerFleet.utils.fleet_config_parser import LAMBDA_BUFFER_SECONDS, SSM_DELIVERY_TIMEOUT_SECONDS


class DrainHook(NestedStack):
    """
    Pauses every runner the ASG wants to terminate, so the lambda
    can deregister it from CI first.
    """
    def __init__(
        self,
        scope: Construct,
        fleet_id: str,
        auto_scaling_group: autoscaling.AutoScalingGroup,
        drain_config: dict,
        **kwargs,
    ) -> None:
        super().__init__(scope, "DrainHookNestedStack", **kwargs)
        fleet_id_alpha = "".join(e for e in fleet_id.title() if e.isalnum())
        # The lambda has to outlive delivering AND running the drain command, so it can still complete the action:
        lambda_timeout = Duration.seconds(
            SSM_DELIVERY_TIMEOUT_SECONDS + drain_config["TimeoutSeconds"] + LAMBDA_BUFFER_SECONDS,
        )

        ## The ASG publishes every pending termination here:
        # https://docs.aws.amazon.com/cdk/api/v2/docs/aws-cdk-lib.aws_sns.Topic.html
        self.lifecycle_topic = sns.Topic(
            self,
            "LifecycleTopic",
            display_name=f"{fleet_id}-drain-lifecycle-topic",
            enforce_ssl=True,
        )

        ## Holds the instance in 'Terminating:Wait' until the lambda says it's done.
        # If the lambda never answers, the heartbeat runs out and default_result is used.
        # https://docs.aws.amazon.com/cdk/api/v2/docs/aws-cdk-lib.aws_autoscaling.LifecycleHook.html
        self.lifecycle_hook = autoscaling.LifecycleHook(
            self,
            "DrainLifecycleHook",
            auto_scaling_group=auto_scaling_group,
            lifecycle_transition=autoscaling.LifecycleTransition.INSTANCE_TERMINATING,
            default_result=autoscaling.DefaultResult.CONTINUE,
            heartbeat_timeout=lambda_timeout,
            # https://docs.aws.amazon.com/cdk/api/v2/docs/aws-cdk-lib.aws_autoscaling_hooktargets.TopicHook.html
            notification_target=hooktargets.TopicHook(self.lifecycle_topic),
        )

        ## Log group for the lambda function:
        # https://docs.aws.amazon.com/cdk/api/v2/docs/aws-cdk-lib.aws_logs.LogGroup.html
        self.log_group_drain_hook = logs.LogGroup(
            self,
            "LogGroupDrainHook",
            retention=logs.RetentionDays.ONE_WEEK,
            removal_policy=RemovalPolicy.DESTROY,
            log_group_name=f"/aws/lambda/{fleet_id}-drain-runner-on-terminate",
        )

        ## Policy/Role for lambda function:
        # https://docs.aws.amazon.com/cdk/api/v2/docs/aws-cdk-lib.aws_iam.Role.html
        self.drain_hook_role = iam.Role(
            self,
            "DrainHookRole",
            assumed_by=iam.ServicePrincipal("lambda.amazonaws.com"),
            description="Role for the DrainRunnerOnTerminate lambda function.",
        )
        # https://docs.aws.amazon.com/cdk/api/v2/docs/aws-cdk-lib.aws_iam.Policy.html
        self.drain_hook_policy = iam.Policy(
            self,
            "DrainHookPolicy",
            roles=[self.drain_hook_role],
            # Statements added below:
            statements=[],
        )

        ## Lambda function to drain the runner:
        # https://docs.aws.amazon.com/cdk/api/v2/docs/aws-cdk-lib.aws_lambda.Function.html
        self.lambda_drain_hook = aws_lambda.Function(
            self,
            "DrainRunnerOnTerminate",
            description=f"{fleet_id_alpha}-DrainRunner: Triggered by ASG scale-in. Runs '{drain_config['Script']}' on the instance, then lets it terminate.",
            code=aws_lambda.Code.from_asset("./RunnerFleet/lambda_functions/drain_runner_on_terminate/"),
            handler="main.lambda_handler",
            runtime=aws_lambda.Runtime.PYTHON_3_12,
            timeout=lambda_timeout,
            log_group=self.log_group_drain_hook,
            role=self.drain_hook_role,
            environment={
                "DRAIN_DOCUMENT_NAME": drain_config["DocumentName"],
                "DRAIN_SCRIPT": drain_config["Script"],
                "DRAIN_WORKING_DIRECTORY": drain_config["WorkingDirectory"],
                "DRAIN_TIMEOUT_SECONDS": str(drain_config["TimeoutSeconds"]),
                "DRAIN_POLL_INTERVAL_SECONDS": str(drain_config["PollIntervalSeconds"]),
                "DRAIN_FAILURE_RESULT": drain_config["FailureResult"],
            },
        )
        ## Hook the lambda up to the topic:
        # https://docs.aws.amazon.com/cdk/api/v2/docs/aws-cdk-lib.aws_sns_subscriptions.LambdaSubscription.html
        self.lifecycle_topic.add_subscription(
            sns_subscriptions.LambdaSubscription(self.lambda_drain_hook),
        )

        ### Lambda Permissions:
        # Give it write to it's own log group:
        self.log_group_drain_hook.grant_write(self.lambda_drain_hook)
        ## Let it run the drain document, on any instance in the account:
        self.drain_hook_policy.add_statements(
            iam.PolicyStatement(
                effect=iam.Effect.ALLOW,
                actions=["ssm:SendCommand"],
                resources=[
                    # '*' for the account, since the AWS-* documents are owned by amazon:
                    f"arn:{self.partition}:ssm:{self.region}:*:document/{drain_config['DocumentName']}",
                    f"arn:{self.partition}:ec2:{self.region}:{self.account}:instance/*",
                ],
            )
        )
        self.drain_hook_policy.add_statements(
            iam.PolicyStatement(
                # NOTE: This is on the list of actions that CANNOT be locked down.
                effect=iam.Effect.ALLOW,
                actions=["ssm:GetCommandInvocation"],
                resources=["*"],
            )
        )
        ## Let it release the instance when it's done:
        self.drain_hook_policy.add_statements(
            iam.PolicyStatement(
                effect=iam.Effect.ALLOW,
                actions=["autoscaling:CompleteLifecycleAction"],
                resources=[auto_scaling_group.auto_scaling_group_arn],
            )
        )

        #####################
        ### cdk_nag stuff ###
        #####################
        # Do at very end, they have to "suppress" after everything's created to work.
        NagSuppressions.add_resource_suppressions(
            self.drain_hook_policy,
            [
                {
                    "id": "AwsSolutions-IAM5",
                    "reason": "GetCommandInvocation requires the wildcard resource, and instance ids aren't known until scale-in.",
                    "appliesTo": [
                        "Resource::*",
                        f"Resource::arn:<AWS::Partition>:ssm:<AWS::Region>:*:document/{drain_config['DocumentName']}",
                        "Resource::arn:<AWS::Partition>:ec2:<AWS::Region>:<AWS::AccountId>:instance/*",
                    ],
                }
            ],
            apply_to_children=True,
        )
        NagSuppressions.add_resource_suppressions(
            self.lifecycle_topic,
            [
                {
                    "id": "AwsSolutions-SNS2",
                    "reason": "Only lifecycle tokens go through here, nothing sensitive enough for KMS.",
                },
            ],
        )
