import json

from aws_cdk.assertions import Match

from tests.configs import FLEET_ALERT_SUBSCRIPTION, FLEET_DRAIN_CUSTOM


class TestFleetVpc:
    def test_vpc_properties(self, minimal_app):
        fleet_template = minimal_app.fleet_template
        ## Make sure there's only one VPC to check:
        # https://docs.aws.amazon.com/cdk/api/v2/docs/aws-cdk-lib.assertions.Template.html#resourcewbrcountwbristype-count
        fleet_template.resource_count_is("AWS::EC2::VPC", 1)
        fleet_template.has_resource_properties(
            "AWS::EC2::VPC",
            {
                "CidrBlock": "10.0.0.0/26",
                "EnableDnsSupport": True,
                "EnableDnsHostnames": True,
            }
        )

    def test_subnets_and_nats(self, minimal_app):
        """ A public and private subnet per AZ, and a NAT per AZ for the private ones """
        fleet_template = minimal_app.fleet_template
        fleet_template.resource_count_is("AWS::EC2::Subnet", 4)
        fleet_template.resource_count_is("AWS::EC2::NatGateway", 2)
        # Every subnet is a /28:
        for subnet in fleet_template.find_resources("AWS::EC2::Subnet").values():
            assert subnet["Properties"]["CidrBlock"].endswith("/28")

    def test_outputs(self, minimal_app):
        minimal_app.fleet_template.has_output("RunnerAsgName", {})
        minimal_app.fleet_template.has_output("DrainLambdaName", {})

    def test_nested_stack_names_are_readable(self, minimal_app):
        nested_stacks = minimal_app.fleet_template.find_resources("AWS::CloudFormation::Stack")
        assert set(nested_stacks.keys()) == {
            "SecurityGroupsNestedStack",
            "RunnerRoleNestedStack",
            "RunnerAsgNestedStack",
            "DrainHookNestedStack",
        }


class TestAlertSubscription:
    def test_no_subscriptions_by_default(self, minimal_app):
        minimal_app.fleet_template.resource_count_is("AWS::SNS::Subscription", 0)

    def test_emails_subscribe_to_notify_topic(self, cdk_app):
        app = cdk_app(fleet_config=FLEET_ALERT_SUBSCRIPTION)
        notify_topic_arn = app.fleet_stack.resolve(app.fleet_stack.sns_notify_topic.topic_arn)
        subscriptions = app.fleet_template.find_resources(
            "AWS::SNS::Subscription",
            {"Properties": {"Protocol": "email", "TopicArn": notify_topic_arn}},
        )
        assert sorted(sub["Properties"]["Endpoint"] for sub in subscriptions.values()) == [
            "DoesNotExist1@gmail.com",
            "DoesNotExist2@gmail.com",
            "DoesNotExist3@gmail.com",
        ]


class TestSecurityGroups:
    def test_ingress_rules(self, minimal_app):
        minimal_app.sg_template.has_resource_properties(
            "AWS::EC2::SecurityGroup",
            {
                "SecurityGroupIngress": Match.array_with([
                    # Everything from inside the VPC:
                    Match.object_like({
                        "CidrIp": "10.0.0.0/26",
                        "IpProtocol": "-1",
                    }),
                    # And each public port:
                    Match.object_like({
                        "CidrIp": "0.0.0.0/0",
                        "IpProtocol": "tcp",
                        "FromPort": 22,
                        "ToPort": 22,
                    }),
                    Match.object_like({
                        "CidrIp": "0.0.0.0/0",
                        "IpProtocol": "tcp",
                        "FromPort": 443,
                        "ToPort": 443,
                    }),
                ]),
            },
        )


class TestRunnerRole:
    def test_managed_policies(self, minimal_app):
        roles = minimal_app.role_template.find_resources("AWS::IAM::Role")
        assert len(roles) == 1, "There should be exactly one instance role."
        role = list(roles.values())[0]
        assert "ec2.amazonaws.com" in json.dumps(role["Properties"]["AssumeRolePolicyDocument"])
        assert len(role["Properties"]["ManagedPolicyArns"]) == len(minimal_app.config["Runner"]["ManagedPolicies"])
        assert "AmazonSSMManagedInstanceCore" in json.dumps(role["Properties"]["ManagedPolicyArns"])


class TestRunnerAsg:
    def test_capacity(self, minimal_app):
        minimal_app.runner_asg_template.resource_count_is("AWS::AutoScaling::AutoScalingGroup", 1)
        minimal_app.runner_asg_template.has_resource_properties(
            "AWS::AutoScaling::AutoScalingGroup",
            {
                "MinSize": "0",
                "MaxSize": "2",
                # Left for the ASG to decide:
                "DesiredCapacity": Match.absent(),
            },
        )

    def test_launch_template_requires_imdsv2(self, minimal_app):
        minimal_app.runner_asg_template.has_resource_properties(
            "AWS::EC2::LaunchTemplate",
            {
                "LaunchTemplateData": Match.object_like({
                    "InstanceType": "t3.large",
                    "MetadataOptions": {"HttpTokens": "required"},
                }),
            },
        )


class TestDrainHook:
    def test_lifecycle_hook(self, minimal_app):
        drain_hook_template = minimal_app.drain_hook_template
        drain_hook_template.resource_count_is("AWS::AutoScaling::LifecycleHook", 1)
        drain_hook_template.has_resource_properties(
            "AWS::AutoScaling::LifecycleHook",
            {
                "LifecycleTransition": "autoscaling:EC2_INSTANCE_TERMINATING",
                # If the lambda never answers, terminate anyways:
                "DefaultResult": "CONTINUE",
                # SSM delivery + drain timeout + the lambda's buffer:
                "HeartbeatTimeout": 690,
            },
        )

    def test_lambda_function(self, minimal_app):
        minimal_app.drain_hook_template.has_resource_properties(
            "AWS::Lambda::Function",
            {
                "Handler": "main.lambda_handler",
                "Runtime": "python3.12",
                "Timeout": 690,
                "Environment": {
                    "Variables": {
                        "DRAIN_DOCUMENT_NAME": "AWS-RunShellScript",
                        "DRAIN_SCRIPT": "./deregister.sh",
                        "DRAIN_WORKING_DIRECTORY": "/opt/actions-runner",
                        "DRAIN_TIMEOUT_SECONDS": "600",
                        "DRAIN_POLL_INTERVAL_SECONDS": "5",
                        "DRAIN_FAILURE_RESULT": "CONTINUE",
                    },
                },
            },
        )

    def test_lambda_subscribed_to_topic(self, minimal_app):
        drain_hook_template = minimal_app.drain_hook_template
        drain_hook_template.resource_count_is("AWS::SNS::Topic", 1)
        drain_hook_template.has_resource_properties(
            "AWS::SNS::Subscription",
            {"Protocol": "lambda"},
        )
        drain_hook_template.has_resource_properties(
            "AWS::Lambda::Permission",
            {
                "Action": "lambda:InvokeFunction",
                "Principal": "sns.amazonaws.com",
            },
        )

    def test_lambda_permissions(self, minimal_app):
        """
        Codify the lambda's permissions, so we're flagged if they ever change.
        """
        minimal_app.drain_hook_template.has_resource_properties(
            "AWS::IAM::Policy",
            {
                "PolicyDocument": {
                    "Statement": Match.array_with([
                        Match.object_like({
                            "Action": "ssm:SendCommand",
                            "Effect": "Allow",
                        }),
                        {
                            "Action": "ssm:GetCommandInvocation",
                            "Effect": "Allow",
                            "Resource": "*",
                        },
                        Match.object_like({
                            "Action": "autoscaling:CompleteLifecycleAction",
                            "Effect": "Allow",
                        }),
                    ]),
                },
            },
        )

    def test_custom_drain_config(self, cdk_app):
        app = cdk_app(fleet_config=FLEET_DRAIN_CUSTOM)
        app.drain_hook_template.has_resource_properties(
            "AWS::AutoScaling::LifecycleHook",
            {"HeartbeatTimeout": 900},
        )
        app.drain_hook_template.has_resource_properties(
            "AWS::Lambda::Function",
            {
                "Timeout": 900,
                "Environment": {
                    "Variables": Match.object_like({
                        "DRAIN_DOCUMENT_NAME": "RunnerDrainDocument",
                        "DRAIN_FAILURE_RESULT": "ABANDON",
                    }),
                },
            },
        )
        ## SendCommand is locked down to the configured document:
        policies = app.drain_hook_template.find_resources("AWS::IAM::Policy")
        assert ":*:document/RunnerDrainDocument" in json.dumps(policies)


class TestBastion:
    def test_disabled_by_default(self, minimal_app):
        assert minimal_app.fleet_stack.bastion_nested_stack is None
        minimal_app.fleet_template.resource_count_is("AWS::EC2::Instance", 0)

    def test_one_per_private_subnet(self, bastion_app):
        bastion_app.bastion_template.resource_count_is("AWS::EC2::Instance", 2)
        bastion_app.bastion_template.has_resource_properties(
            "AWS::EC2::Instance",
            {"InstanceType": "t3.micro"},
        )
