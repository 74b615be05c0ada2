"""
Fleet Config Parser

The docs for schema is at: https://github.com/keleshev/schema
"""
from schema import Schema, And, Or, Use, Optional

## Canonical's Ubuntu (x86_64) image, kept up to date by them in SSM:
UBUNTU_AMI_SSM_PARAMETER = "/aws/service/canonical/ubuntu/server/22.04/stable/current/amd64/hvm/ebs-gp2/ami-id"

## Draining goes through SSM, so the instance can never lose this one:
SSM_MANAGED_POLICY = "AmazonSSMManagedInstanceCore"

# Tuples, so the defaults can't be mutated between loads:
DEFAULT_MANAGED_POLICIES = (
    "AmazonEC2FullAccess",
    SSM_MANAGED_POLICY,
    "AmazonEC2ContainerRegistryPowerUser",
    "AutoScalingFullAccess",
    "AmazonS3FullAccess",
    "service-role/AmazonECSTaskExecutionRolePolicy",
    "CloudWatchFullAccess",
)
DEFAULT_INGRESS_PORTS = (22, 80, 443)

## The drain lambda maxes out at 15min. It has to wait out SSM delivering the command,
# then the script itself, and still have a minute left to talk to the ASG:
LAMBDA_MAX_TIMEOUT_SECONDS = 900
LAMBDA_BUFFER_SECONDS = 60
# Same as SSM_DELIVERY_TIMEOUT_SECONDS in the drain lambda:
SSM_DELIVERY_TIMEOUT_SECONDS = 30
MAX_DRAIN_TIMEOUT_SECONDS = LAMBDA_MAX_TIMEOUT_SECONDS - SSM_DELIVERY_TIMEOUT_SECONDS - LAMBDA_BUFFER_SECONDS


def _with_ssm_policy(policies: list) -> list:
    """ Make sure the SSM core policy is attached, without duplicating it """
    policies = list(policies)
    if SSM_MANAGED_POLICY not in policies:
        policies.append(SSM_MANAGED_POLICY)
    return policies

def looks_like_email(endpoint: str) -> bool:
    """ Catch typos and unset env vars ('UNDECLARED') at synth, not when SNS rejects it """
    name, _, domain = endpoint.partition("@")
    return bool(name) and "." in domain

def capacity_in_range(runner: dict) -> bool:
    """ MinSize <= DesiredCapacity <= MaxSize (DesiredCapacity is optional) """
    if runner["MinSize"] > runner["MaxSize"]:
        return False
    if runner["DesiredCapacity"] is None:
        return True
    return runner["MinSize"] <= runner["DesiredCapacity"] <= runner["MaxSize"]


### You have to keep Schema's separate, when you need an Optional dict of an Optional dict.
# (If "Vpc" is optional and missing, the nested defaults won't get created. The
# top-level default validates an empty dict instead. It's a callable, so every
# load gets its own copy.)
vpc_config = Schema({
    Optional("Cidr", default="10.0.0.0/26"): str,
    Optional("MaxAZs", default=2): And(int, lambda n: n >= 1),
    # Private subnets need at least one NAT for egress:
    Optional("NatGateways", default=2): And(int, lambda n: n >= 1),
})

drain_config = Schema({
    # Document has to take 'commands', 'workingDirectory', and 'executionTimeout':
    Optional("DocumentName", default="AWS-RunShellScript"): str,
    # Ran from inside WorkingDirectory. Should deregister the runner from CI:
    Optional("Script", default="./deregister.sh"): str,
    Optional("WorkingDirectory", default="/opt/actions-runner"): str,
    Optional("TimeoutSeconds", default=600): And(int, lambda s: 1 <= s <= MAX_DRAIN_TIMEOUT_SECONDS),
    Optional("PollIntervalSeconds", default=5): And(int, lambda s: s >= 1),
    # What the ASG is told if the drain fails. CONTINUE = terminate anyways:
    Optional("FailureResult", default="CONTINUE"): And(str, Use(str.upper), Or("CONTINUE", "ABANDON")),
})

bastion_config = Schema({
    Optional("Enabled", default=False): bool,
    Optional("InstanceType", default="t2.large"): And(str, Use(str.lower)),
})

## Who gets emailed when the runner ASG errors. Whitespace-separated, so one
# env var can hold the whole list:
alert_subscription_config = Schema({
    Optional("Email", default=lambda: []): Or(
        And(None, Use(lambda _: [])),
        And(str, Use(str.split), [And(str, looks_like_email)]),
    ),
})

runner_config = Schema(And(
    {
        "InstanceType": And(str, Use(str.lower)),
        Optional("AmiSsmParameter", default=UBUNTU_AMI_SSM_PARAMETER): str,
        Optional("MinSize", default=0): And(int, lambda n: n >= 0),
        Optional("MaxSize", default=2): And(int, lambda n: n >= 1),
        # None: Let the ASG decide (starts at MinSize).
        Optional("DesiredCapacity", default=None): Or(None, And(int, lambda n: n >= 0)),
        Optional("ManagedPolicies", default=DEFAULT_MANAGED_POLICIES): And([str], Use(_with_ssm_policy)),
        Optional("IngressPorts", default=DEFAULT_INGRESS_PORTS): [And(int, lambda p: 0 < p < 65536)],
        # Extra bash lines for the instance's first boot (install/register the runner):
        Optional("UserData", default=()): [str],
    },
    capacity_in_range,
))


####################
### Fleet Config ###
####################
def fleet_config_schema() -> Schema:
    """ Config schema for the runner fleet stack. """
    return Schema({
        Optional("Vpc", default=lambda: vpc_config.validate({})): vpc_config,
        "Runner": runner_config,
        Optional("Drain", default=lambda: drain_config.validate({})): drain_config,
        Optional("Bastion", default=lambda: bastion_config.validate({})): bastion_config,
        Optional("AlertSubscription", default=lambda: alert_subscription_config.validate({})): alert_subscription_config,
    })
