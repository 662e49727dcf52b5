#!/usr/bin/env python3
import os

from aws_cdk import App, Environment

from cloud9_ssm_stack import Cloud9SsmStack

app = App()

# Cloud9 environment bootstrapped through an SSM document
Cloud9SsmStack(
    app,
    "CustomCloud9Ssm",
    env=Environment(
        account=os.environ.get("CDK_DEFAULT_ACCOUNT"),
        region=os.environ.get("CDK_DEFAULT_REGION"),
    ),
)

app.synth()
