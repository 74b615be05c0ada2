import json
import threading

import boto3
import botocore


def setup_autoscaling_group(asg_name: str, desired_capacity: int=1):
    ## Only call inside of moto, so the clients here are mocked:
    # moto: https://docs.getmoto.org/en/latest/docs/services/autoscaling.html
    # boto: https://boto3.amazonaws.com/v1/documentation/api/latest/reference/services/autoscaling.html
    asg_client = boto3.client('autoscaling', region_name="us-west-2")
    # moto: https://docs.getmoto.org/en/latest/docs/services/ec2.html
    ec2_client = boto3.client('ec2', region_name="us-west-2")
    # Use the Mock Default VPC's first subnet:
    subnet = ec2_client.describe_subnets()["Subnets"][0]
    ## Create a very basic launch config:
    # https://boto3.amazonaws.com/v1/documentation/api/latest/reference/services/autoscaling/client/create_launch_configuration.html
    launch_config_name = "test-launch-config"
    asg_client.create_launch_configuration(
        LaunchConfigurationName=launch_config_name,
        ImageId="ami-12345678",
        InstanceType="t2.micro",
    )
    ## The runner ASG the instances get scaled in from:
    # https://boto3.amazonaws.com/v1/documentation/api/latest/reference/services/autoscaling/client/create_auto_scaling_group.html
    asg_client.create_auto_scaling_group(
        AutoScalingGroupName=asg_name,
        MinSize=0,
        MaxSize=2,
        DesiredCapacity=desired_capacity,
        LaunchConfigurationName=launch_config_name,
        VPCZoneIdentifier=subnet["SubnetId"],
    )
    instances = asg_client.describe_auto_scaling_instances()["AutoScalingInstances"]
    return asg_client, [instance["InstanceId"] for instance in instances]


def termination_message(group="asg-1", hook="hook-1", token="tok-1", instance_id="i-111") -> dict:
    """ What the lifecycle hook publishes to SNS when an instance is picked for scale-in """
    return {
        "Origin": "AutoScalingGroup",
        "Destination": "EC2",
        "Service": "AWS Auto Scaling",
        "Time": "2026-10-17T12:00:00.000Z",
        "AccountId": "123456789012",
        "LifecycleTransition": "autoscaling:EC2_INSTANCE_TERMINATING",
        "AutoScalingGroupName": group,
        "LifecycleHookName": hook,
        "LifecycleActionToken": token,
        "EC2InstanceId": instance_id,
        "RequestId": "00000000-0000-0000-0000-000000000000",
    }

def sns_record(message) -> dict:
    """ Wrap one message the way SNS hands it to a lambda (Message is a json STRING) """
    return {
        "EventSource": "aws:sns",
        "EventVersion": "1.0",
        "Sns": {
            "Type": "Notification",
            "TopicArn": "arn:aws:sns:us-west-2:123456789012:drain-lifecycle-topic",
            "Subject": "Auto Scaling:  Lifecycle action 'TERMINATING'",
            "Message": message if isinstance(message, str) else json.dumps(message),
        },
    }

def sns_event(*messages) -> dict:
    return {"Records": [sns_record(message) for message in messages]}


def client_error(code: str, operation: str, message: str="") -> botocore.exceptions.ClientError:
    return botocore.exceptions.ClientError(
        {"Error": {"Code": code, "Message": message}},
        operation,
    )

class RecordingAsgClient:
    """
    Stands in for the autoscaling client. Records every completion, and
    errors on a token that was already used (like the real API does).
    """
    def __init__(self):
        self.calls = []
        self._used_tokens = set()
        self._lock = threading.Lock()

    def complete_lifecycle_action(self, **kwargs):
        with self._lock:
            self.calls.append(kwargs)
            token = kwargs["LifecycleActionToken"]
            if token in self._used_tokens:
                raise client_error(
                    "ValidationError",
                    "CompleteLifecycleAction",
                    f"No active Lifecycle Action found with token {token}",
                )
            self._used_tokens.add(token)
        return {}
