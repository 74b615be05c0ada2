"""
Lambda code for draining a CI runner before the ASG terminates it.

The ASG's terminate lifecycle hook publishes to an SNS topic, which triggers
this. For each instance going down, the deregister script is ran through SSM,
waited on, and THEN the lifecycle action is completed so the instance can go.
"""

import os
import json
import math
from enum import Enum
from functools import cache
from typing import Callable, Optional
from dataclasses import dataclass, asdict
from concurrent.futures import ThreadPoolExecutor

import boto3
import botocore

# The only transition this lambda cares about:
TERMINATING_TRANSITION = "autoscaling:EC2_INSTANCE_TERMINATING"
# Sent once by the ASG when the hook is first created:
TEST_NOTIFICATION = "autoscaling:TEST_NOTIFICATION"
# How long SSM waits for the agent to pick the command up (SSM's minimum).
# Keep in sync with RunnerFleet/utils/fleet_config_parser.py, the lambda timeout depends on it:
SSM_DELIVERY_TIMEOUT_SECONDS = 30

# frozen=True: This should never be modified (change cdk inputs instead)
@dataclass(frozen=True)
class EnvVars:
    """ Env vars that the lambda needs. """
    # pylint: disable=invalid-name
    DRAIN_DOCUMENT_NAME: str
    DRAIN_SCRIPT: str
    DRAIN_WORKING_DIRECTORY: str
    DRAIN_TIMEOUT_SECONDS: str
    DRAIN_POLL_INTERVAL_SECONDS: str
    DRAIN_FAILURE_RESULT: str
    # pylint: enable=invalid-name

@cache
def get_env_vars() -> EnvVars:
    """ Lazy-load and Validate the environment variables """
    # EnvVars will naturally error with ALL the missing env-vars on creation:
    return EnvVars(**{
        # DON'T use getenv. We don't want the key to exist if it's missing.
        k: os.environ[k] for k in EnvVars.__annotations__.keys() if k in os.environ
    })

## Boto3 Clients:
# ALWAYS use @cache for clients. Even if they're always called, it helps
# them not exist until moto is setup inside of the test suite.
@cache
def get_ssm_client():
    """ Used for running the drain script on the instance """
    return boto3.client('ssm')

@cache
def get_asg_client():
    """ Used for completing the lifecycle action """
    return boto3.client('autoscaling')


class MalformedEventError(ValueError):
    """ The SNS message can't be turned into a TerminationEvent. """

class DispatchError(RuntimeError):
    """ SSM never accepted the drain command. """


class DrainState(Enum):
    """ Where one TerminationEvent is in the drain. Only ever moves forward. """
    RECEIVED = "RECEIVED"
    DRAIN_DISPATCHED = "DRAIN_DISPATCHED"
    DRAIN_TERMINAL = "DRAIN_TERMINAL"
    COMPLETED = "COMPLETED"

class DrainStatus(Enum):
    SUCCESS = "Success"
    FAILURE = "Failure"
    TIMEOUT = "Timeout"

class LifecycleResult(Enum):
    CONTINUE = "CONTINUE"
    ABANDON = "ABANDON"


@dataclass(frozen=True)
class TerminationEvent:
    """ One instance the ASG wants to terminate, paused by the lifecycle hook. """
    group_name: str
    hook_name: str
    instance_id: str
    action_token: str

    # Attribute -> key in the ASG notification:
    _FIELDS = {
        "group_name": "AutoScalingGroupName",
        "hook_name": "LifecycleHookName",
        "instance_id": "EC2InstanceId",
        "action_token": "LifecycleActionToken",
    }

    @classmethod
    def from_message(cls, message: dict) -> "TerminationEvent":
        """ Validate the (already unwrapped) ASG notification """
        if message.get("Event") == TEST_NOTIFICATION:
            raise MalformedEventError("ASG test notification, nothing to drain.")
        transition = message.get("LifecycleTransition")
        if transition is not None and transition != TERMINATING_TRANSITION:
            raise MalformedEventError(f"Not a termination event: '{transition}'.")

        missing = [key for key in cls._FIELDS.values() if not isinstance(message.get(key), str) or not message[key]]
        if missing:
            raise MalformedEventError(f"Missing required field(s): {', '.join(missing)}")
        return cls(**{attr: message[key] for attr, key in cls._FIELDS.items()})

def unwrap_sns_record(record: dict) -> dict:
    """ Pull the ASG notification out of one SNS record """
    try:
        raw_message = record["Sns"]["Message"]
    except (KeyError, TypeError) as e:
        raise MalformedEventError("SNS record has no 'Sns.Message' field.") from e
    try:
        message = json.loads(raw_message)
    except (TypeError, json.JSONDecodeError) as e:
        raise MalformedEventError(f"SNS message is not json: {raw_message!r}") from e
    if not isinstance(message, dict):
        raise MalformedEventError(f"SNS message is not a json object: {raw_message!r}")
    return message


@dataclass(frozen=True)
class DrainCommand:
    instance_id: str
    script: str
    working_directory: str
    timeout_seconds: int

@dataclass(frozen=True)
class DrainResult:
    # None if the command never made it to SSM:
    command_id: Optional[str]
    status: DrainStatus
    output: str

@dataclass(frozen=True)
class LifecycleCompletion:
    group_name: str
    hook_name: str
    action_token: str
    result: LifecycleResult

    def to_request(self) -> dict:
        """ The kwargs for `complete_lifecycle_action` """
        return {
            "AutoScalingGroupName": self.group_name,
            "LifecycleHookName": self.hook_name,
            "LifecycleActionToken": self.action_token,
            "LifecycleActionResult": self.result.value,
        }


class SsmCommandDispatcher:
    """
    Runs the drain script on an instance with SSM Run Command.

    `dispatch` only sends the command and returns its id. `wait` blocks
    until that command is in a terminal state (or the timeout is hit).
    """
    # get_command_invocation statuses that won't change anymore:
    TERMINAL_STATUSES = {
        "Success": DrainStatus.SUCCESS,
        "Failed": DrainStatus.FAILURE,
        "Cancelled": DrainStatus.FAILURE,
        # Not final yet, but it's on its way to Cancelled (and stops the waiter):
        "Cancelling": DrainStatus.FAILURE,
        "TimedOut": DrainStatus.TIMEOUT,
    }

    def __init__(self, ssm_client, document_name: str, poll_interval_seconds: int) -> None:
        self.ssm_client = ssm_client
        self.document_name = document_name
        self.poll_interval_seconds = poll_interval_seconds

    def dispatch(self, command: DrainCommand) -> str:
        """ Send the command. Raises DispatchError if SSM won't take it. """
        try:
            # https://boto3.amazonaws.com/v1/documentation/api/latest/reference/services/ssm/client/send_command.html
            response = self.ssm_client.send_command(
                InstanceIds=[command.instance_id],
                DocumentName=self.document_name,
                Comment=f"Drain runner on {command.instance_id}",
                Parameters={
                    "commands": [command.script],
                    "workingDirectory": [command.working_directory],
                    # Kills the script on the instance, so the wait below is bounded:
                    "executionTimeout": [str(command.timeout_seconds)],
                },
                # Fail fast if the agent isn't there. The wait below has to cover this too:
                TimeoutSeconds=SSM_DELIVERY_TIMEOUT_SECONDS,
            )
        except (botocore.exceptions.ClientError, botocore.exceptions.BotoCoreError) as e:
            raise DispatchError(f"Could not send drain command to '{command.instance_id}': {e}") from e
        return response["Command"]["CommandId"]

    def wait(self, command_id: str, command: DrainCommand) -> DrainResult:
        """ Block until the command is terminal, and report how it ended """
        ## Wait for it:
        # https://boto3.amazonaws.com/v1/documentation/api/latest/reference/services/ssm/waiter/CommandExecuted.html
        waiter = self.ssm_client.get_waiter('command_executed')
        max_attempts = self.max_attempts(command)
        try:
            waiter.wait(
                CommandId=command_id,
                InstanceId=command.instance_id,
                WaiterConfig={
                    "Delay": self.poll_interval_seconds,
                    "MaxAttempts": max_attempts,
                },
            )
        except botocore.exceptions.WaiterError as e:
            # Either the script failed, or it's still going. The invocation says which:
            print(json.dumps({"Message": "Stopped waiting on drain command", "CommandId": command_id, "Reason": str(e)}))
        except (botocore.exceptions.ClientError, botocore.exceptions.BotoCoreError) as e:
            # The waiter lets connection errors through. Same as above, the invocation decides:
            print(json.dumps({
                "Level": "WARNING",
                "Message": "Lost connection while waiting on drain command",
                "CommandId": command_id,
                "Reason": str(e),
            }))

        try:
            invocation = self.ssm_client.get_command_invocation(
                CommandId=command_id,
                InstanceId=command.instance_id,
            )
        except (botocore.exceptions.ClientError, botocore.exceptions.BotoCoreError) as e:
            return DrainResult(command_id=command_id, status=DrainStatus.FAILURE, output=f"Could not read command invocation: {e}")

        # Anything not terminal by now means we ran out of time:
        status = self.TERMINAL_STATUSES.get(invocation["Status"], DrainStatus.TIMEOUT)
        output = invocation.get("StandardOutputContent", "") + invocation.get("StandardErrorContent", "")
        return DrainResult(command_id=command_id, status=status, output=output)

    def max_attempts(self, command: DrainCommand) -> int:
        """ Enough polls to outlast delivery AND executionTimeout """
        budget_seconds = SSM_DELIVERY_TIMEOUT_SECONDS + command.timeout_seconds
        # The first poll is immediate, so one more to land after both run out:
        return math.ceil(budget_seconds / max(self.poll_interval_seconds, 1)) + 1


class DrainHandler:
    """
    Drains one instance, then releases it back to the ASG.

    Every well-formed event ends in exactly one `complete_lifecycle_action`
    call, no matter how the drain went. The drain is never retried.
    """
    def __init__(
        self,
        dispatcher: SsmCommandDispatcher,
        asg_client,
        script: str,
        working_directory: str,
        timeout_seconds: int,
        failure_result: LifecycleResult=LifecycleResult.CONTINUE,
    ) -> None:
        self.dispatcher = dispatcher
        self.asg_client = asg_client
        self.script = script
        self.working_directory = working_directory
        self.timeout_seconds = timeout_seconds
        # What to tell the ASG if the drain didn't succeed. CONTINUE means the
        # instance terminates anyways, instead of sitting in Terminating:Wait.
        self.failure_result = failure_result

    def handle(self, event: TerminationEvent) -> Optional[LifecycleCompletion]:
        """ Drain the instance, then complete the lifecycle action """
        if not event.instance_id or not event.action_token:
            print(json.dumps({"Level": "WARNING", "Message": "Dropping malformed event", "Event": asdict(event)}))
            return None
        self._log_state(event, DrainState.RECEIVED)

        command = self.build_command(event)
        drain_result = self.drain(event, command)

        result = LifecycleResult.CONTINUE if drain_result.status == DrainStatus.SUCCESS else self.failure_result
        completion = LifecycleCompletion(
            group_name=event.group_name,
            hook_name=event.hook_name,
            action_token=event.action_token,
            result=result,
        )
        self.complete(event, completion)
        return completion

    def build_command(self, event: TerminationEvent) -> DrainCommand:
        return DrainCommand(
            instance_id=event.instance_id,
            script=self.script,
            working_directory=self.working_directory,
            timeout_seconds=self.timeout_seconds,
        )

    def drain(self, event: TerminationEvent, command: DrainCommand) -> DrainResult:
        """ Dispatch the command and wait on it. Never raises. """
        print(json.dumps({"Message": "Dispatching drain command", "Command": asdict(command)}))
        try:
            command_id = self.dispatcher.dispatch(command)
        except DispatchError as e:
            print(json.dumps({
                "Level": "ERROR",
                "Message": "Drain command could not be dispatched",
                "InstanceId": event.instance_id,
                "Error": str(e),
            }))
            drain_result = DrainResult(command_id=None, status=DrainStatus.FAILURE, output=str(e))
            self._log_state(event, DrainState.DRAIN_TERMINAL, Status=drain_result.status.value)
            return drain_result
        self._log_state(event, DrainState.DRAIN_DISPATCHED, CommandId=command_id)

        try:
            drain_result = self.dispatcher.wait(command_id, command)
        except Exception as e: # pylint: disable=broad-exception-caught
            # The instance still has to be released, whatever went wrong here:
            drain_result = DrainResult(command_id=command_id, status=DrainStatus.FAILURE, output=f"Wait failed: {e!r}")
        self._log_state(
            event,
            DrainState.DRAIN_TERMINAL,
            CommandId=command_id,
            Status=drain_result.status.value,
            Output=drain_result.output,
        )
        if drain_result.status != DrainStatus.SUCCESS:
            print(json.dumps({
                "Level": "ERROR",
                "Message": "Drain command did not succeed",
                "InstanceId": event.instance_id,
                "CommandId": command_id,
                "Status": drain_result.status.value,
            }))
        return drain_result

    def complete(self, event: TerminationEvent, completion: LifecycleCompletion) -> bool:
        """ Release the instance. Errors are logged, the hook's default result is the fallback. """
        request = completion.to_request()
        print(json.dumps({"Message": "Completing lifecycle action", "Request": request}))
        try:
            # https://boto3.amazonaws.com/v1/documentation/api/latest/reference/services/autoscaling/client/complete_lifecycle_action.html
            self.asg_client.complete_lifecycle_action(**request)
            acknowledged = True
        except (botocore.exceptions.ClientError, botocore.exceptions.BotoCoreError) as e:
            # Normally a duplicate SNS delivery, the token was already used:
            print(json.dumps({
                "Level": "ERROR",
                "Message": "Could not complete lifecycle action",
                "InstanceId": event.instance_id,
                "Error": str(e),
            }))
            acknowledged = False
        self._log_state(event, DrainState.COMPLETED, Result=completion.result.value, Acknowledged=acknowledged)
        return acknowledged

    @staticmethod
    def _log_state(event: TerminationEvent, state: DrainState, **details) -> None:
        print(json.dumps({
            "State": state.value,
            "AutoScalingGroupName": event.group_name,
            "InstanceId": event.instance_id,
            **details,
        }, default=str))


class SnsConsumer:
    """
    Turns an SNS lambda event into TerminationEvents, and hands each
    one to the registered handler.
    """
    def __init__(self) -> None:
        self._handler: Optional[Callable[[TerminationEvent], object]] = None

    def register(self, handler: Callable[[TerminationEvent], object]) -> None:
        self._handler = handler

    def parse(self, event: dict) -> list[TerminationEvent]:
        """ Every valid TerminationEvent in the SNS event. Malformed ones are dropped. """
        records = event.get("Records") if isinstance(event, dict) else None
        if not isinstance(records, list):
            print(json.dumps({"Level": "WARNING", "Message": "Dropping malformed event", "Reason": "No 'Records' list."}))
            return []
        termination_events = []
        for record in records:
            try:
                termination_events.append(TerminationEvent.from_message(unwrap_sns_record(record)))
            except MalformedEventError as e:
                print(json.dumps({"Level": "WARNING", "Message": "Dropping malformed event", "Reason": str(e)}))
        return termination_events

    def consume(self, event: dict) -> list:
        """ Handle everything in one SNS event, concurrently if there's more than one """
        if self._handler is None:
            raise RuntimeError("No handler registered with the SnsConsumer.")
        termination_events = self.parse(event)
        if len(termination_events) <= 1:
            return [self._handler(termination_event) for termination_event in termination_events]
        # Each event has its own instance and token, nothing is shared between them:
        with ThreadPoolExecutor(max_workers=len(termination_events)) as pool:
            return list(pool.map(self._handler, termination_events))


@cache
def get_consumer() -> SnsConsumer:
    """ Wire the consumer to the handler, once per container """
    env = get_env_vars()
    dispatcher = SsmCommandDispatcher(
        get_ssm_client(),
        document_name=env.DRAIN_DOCUMENT_NAME,
        poll_interval_seconds=int(env.DRAIN_POLL_INTERVAL_SECONDS),
    )
    handler = DrainHandler(
        dispatcher=dispatcher,
        asg_client=get_asg_client(),
        script=env.DRAIN_SCRIPT,
        working_directory=env.DRAIN_WORKING_DIRECTORY,
        timeout_seconds=int(env.DRAIN_TIMEOUT_SECONDS),
        failure_result=LifecycleResult(env.DRAIN_FAILURE_RESULT.upper()),
    )
    consumer = SnsConsumer()
    consumer.register(handler.handle)
    return consumer


def lambda_handler(event: dict, context) -> None:
    """ Main function of the lambda. """
    env = get_env_vars()
    print(json.dumps({"Event": event, "Context": context, "Env": asdict(env)}, default=str))
    get_consumer().consume(event)
