"""Global pytest configuration and fixtures for CDK testing."""

import os
import sys
from dataclasses import dataclass
from pathlib import Path

import pytest
from aws_cdk import App, Environment

# Add the cdk directory to Python path for imports
cdk_path = Path(__file__).parent.parent / "cdk"
if str(cdk_path) not in sys.path:
    sys.path.insert(0, str(cdk_path))

# Set before collection so boto3 clients created at import time find a region
TEST_ENV = {
    "AWS_DEFAULT_REGION": "us-east-1",
    "AWS_REGION": "us-east-1",
    "CDK_DEFAULT_REGION": "us-east-1",
    "CDK_DEFAULT_ACCOUNT": "123456789012",
    "CDK_DISABLE_VERSION_CHECK": "true",
    # Prevent actual AWS API calls during testing
    "AWS_ACCESS_KEY_ID": "testing",
    "AWS_SECRET_ACCESS_KEY": "testing",
    "AWS_SECURITY_TOKEN": "testing",
    "AWS_SESSION_TOKEN": "testing",
    "POWERTOOLS_SERVICE_NAME": "custom-cloud9-ssm-profile-attach",
}

for key, value in TEST_ENV.items():
    os.environ.setdefault(key, value)


@pytest.fixture
def cdk_app():
    """Create a fresh CDK App instance for each test."""
    return App()


@pytest.fixture(scope="session")
def aws_environment():
    """Provide AWS environment configuration for testing."""
    return Environment(
        account=os.environ.get("CDK_DEFAULT_ACCOUNT", "123456789012"),
        region=os.environ.get("CDK_DEFAULT_REGION", "us-east-1"),
    )


@pytest.fixture
def lambda_context():
    @dataclass
    class LambdaContext:
        function_name: str = "profile-attach"
        memory_limit_in_mb: int = 128
        invoked_function_arn: str = (
            "arn:aws:lambda:us-east-1:123456789012:function:profile-attach"
        )
        aws_request_id: str = "52fdfc07-2182-154f-163f-5f0f9a621d72"

    return LambdaContext()
