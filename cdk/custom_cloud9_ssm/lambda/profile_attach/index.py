"""
Lambda handlers for the custom resource that attaches an instance profile to the
EC2 instance of a Cloud9 environment.

The Create event locates the instance. Completion checks then attach the profile,
reboot the instance so the SSM agent picks up the new role, and wait for the SSM
association to finish running on it.
"""

from typing import Any, Dict, List, Optional

import boto3
from aws_lambda_powertools import Logger
from aws_lambda_powertools.utilities.typing import LambdaContext

logger = Logger()
ec2_client = boto3.client("ec2")
iam_client = boto3.client("iam")
ssm_client = boto3.client("ssm")

TARGET_TAG_KEY = "stack-id"
FAILED_STATUSES = ("Failed", "TimedOut", "Cancelled")


def find_instance(stack_id: str) -> Optional[Dict[str, Any]]:
    """
    Find the pending or running instance tagged with the id of the stack.

    Args:
        stack_id: Id of the stack that created the Cloud9 environment

    Returns:
        Instance description if one exists, None otherwise
    """
    response = ec2_client.describe_instances(
        Filters=[
            {"Name": f"tag:{TARGET_TAG_KEY}", "Values": [stack_id]},
            {"Name": "instance-state-name", "Values": ["pending", "running"]},
        ]
    )

    for reservation in response.get("Reservations", []):
        for instance in reservation.get("Instances", []):
            return instance

    return None


def describe_instance(instance_id: str) -> Dict[str, Any]:
    response = ec2_client.describe_instances(InstanceIds=[instance_id])
    return response["Reservations"][0]["Instances"][0]


def profile_is_listed(profile_arn: str) -> bool:
    """IAM is eventually consistent, the new profile may not be visible yet."""
    paginator = iam_client.get_paginator("list_instance_profiles")

    for page in paginator.paginate():
        for profile in page.get("InstanceProfiles", []):
            if profile.get("Arn") == profile_arn:
                return True

    return False


def has_profile(instance: Dict[str, Any], profile_arn: str) -> bool:
    return instance.get("IamInstanceProfile", {}).get("Arn") == profile_arn


def attach_profile(instance_id: str, profile_arn: str) -> None:
    """
    Attach the profile to the instance, replacing any profile Cloud9 attached, and
    reboot the instance.
    """
    associations: List[Dict[str, Any]] = ec2_client.describe_iam_instance_profile_associations(
        Filters=[
            {"Name": "instance-id", "Values": [instance_id]},
            {"Name": "state", "Values": ["associating", "associated"]},
        ]
    ).get("IamInstanceProfileAssociations", [])

    if associations:
        association_id = associations[0]["AssociationId"]
        logger.info(
            "Replacing instance profile association",
            extra={"instance_id": instance_id, "association_id": association_id},
        )
        ec2_client.replace_iam_instance_profile_association(
            IamInstanceProfile={"Arn": profile_arn},
            AssociationId=association_id,
        )
    else:
        logger.info("Associating instance profile", extra={"instance_id": instance_id})
        ec2_client.associate_iam_instance_profile(
            IamInstanceProfile={"Arn": profile_arn},
            InstanceId=instance_id,
        )

    logger.info("Rebooting instance", extra={"instance_id": instance_id})
    ec2_client.reboot_instances(InstanceIds=[instance_id])


def latest_execution_target(association_id: str, instance_id: str) -> Optional[Dict[str, Any]]:
    """
    Find the most recent execution of the association that targeted the instance.

    Returns:
        Execution target description, None if the association has not run on the
        instance yet
    """
    executions = ssm_client.describe_association_executions(AssociationId=association_id).get(
        "AssociationExecutions", []
    )
    executions.sort(key=lambda execution: execution["CreatedTime"], reverse=True)

    for execution in executions:
        targets = ssm_client.describe_association_execution_targets(
            AssociationId=association_id,
            ExecutionId=execution["ExecutionId"],
            Filters=[{"Key": "ResourceId", "Value": instance_id}],
        ).get("AssociationExecutionTargets", [])

        if targets:
            return targets[0]

    return None


def on_create(properties: Dict[str, Any]) -> Dict[str, Any]:
    stack_id = properties["stack_id"]
    instance = find_instance(stack_id)

    if instance is None:
        raise RuntimeError(f"No running Cloud9 instance tagged with {TARGET_TAG_KEY}={stack_id}")

    instance_id = instance["InstanceId"]
    logger.info("Cloud9 instance found", extra={"instance_id": instance_id})

    return {"PhysicalResourceId": instance_id, "Data": {"InstanceId": instance_id}}


def is_create_complete(instance_id: str, properties: Dict[str, Any]) -> Dict[str, bool]:
    profile_arn = properties["profile_arn"]
    association_id = properties["association_id"]

    if not profile_is_listed(profile_arn):
        logger.info("Instance profile not listed yet", extra={"profile_arn": profile_arn})
        return {"IsComplete": False}

    if not has_profile(describe_instance(instance_id), profile_arn):
        attach_profile(instance_id, profile_arn)
        return {"IsComplete": False}

    target = latest_execution_target(association_id, instance_id)

    if target is None:
        logger.info("Association has not run on the instance yet")
        return {"IsComplete": False}

    status = target.get("Status")
    logger.info("Association execution status", extra={"status": status, "target": target})

    if status == "Success":
        return {"IsComplete": True}

    if status in FAILED_STATUSES:
        raise RuntimeError(
            f"Association {association_id} {status} on {instance_id}: "
            f"{target.get('DetailedStatus', '')}"
        )

    return {"IsComplete": False}


@logger.inject_lambda_context
def on_event_handler(event: Dict[str, Any], context: LambdaContext) -> Dict[str, Any]:
    """
    Handle custom resource lifecycle events.

    Raises:
        ValueError: If the request type is invalid
        RuntimeError: If the Cloud9 instance cannot be found
    """
    logger.set_correlation_id(context.aws_request_id)
    logger.info("Custom resource event received", extra={"event": event})

    request_type = event["RequestType"]
    properties = event.get("ResourceProperties", {})

    if request_type == "Create":
        return on_create(properties)

    if request_type in ("Update", "Delete"):
        logger.info(f"{request_type} event handler invoked (no-op)")
        return {"PhysicalResourceId": event.get("PhysicalResourceId", "")}

    raise ValueError(f"Invalid request type: {request_type}")


@logger.inject_lambda_context
def is_complete_handler(event: Dict[str, Any], context: LambdaContext) -> Dict[str, bool]:
    """
    Handle isComplete checks for the profile attachment.

    Raises:
        ValueError: If the request type is invalid
        RuntimeError: If the association failed on the instance
    """
    logger.set_correlation_id(context.aws_request_id)
    logger.info("isComplete check event received", extra={"event": event})

    request_type = event["RequestType"]
    properties = event.get("ResourceProperties", {})

    if request_type == "Create":
        return is_create_complete(event["PhysicalResourceId"], properties)

    if request_type in ("Update", "Delete"):
        return {"IsComplete": True}

    raise ValueError(f"Invalid request type: {request_type}")
