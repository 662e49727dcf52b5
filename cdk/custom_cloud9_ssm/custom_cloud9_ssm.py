"""
Cloud9 EC2 environment bootstrapped by an SSM document.

The instance launched by Cloud9 is tagged with the id of the stack, targeted by an
SSM association and, once deployed, given an instance profile by a custom resource
so the SSM agent can run the document steps with the permissions granted here.
"""

import copy
import logging
import pathlib
import re
import shlex
from typing import Any, Mapping, Optional

import yaml
from aws_cdk import (
    CustomResource,
    Duration,
    Stack,
    Tags,
)
from aws_cdk import (
    aws_cloud9 as cloud9,
)
from aws_cdk import (
    aws_iam as iam,
)
from aws_cdk import (
    aws_lambda as lambda_,
)
from aws_cdk import (
    aws_logs as logs,
)
from aws_cdk import (
    aws_ssm as ssm,
)
from aws_cdk.custom_resources import Provider
from constructs import Construct

logger = logging.getLogger(__name__)

PACKAGE_DIR = pathlib.Path(__file__).parent
ASSETS_DIR = PACKAGE_DIR / "assets"
PROFILE_ATTACH_CODE_DIR = PACKAGE_DIR / "lambda" / "profile_attach"

POWERTOOLS_LAYER_ARN = (
    "arn:aws:lambda:{region}:017000801446:layer:AWSLambdaPowertoolsPythonV3-python312-arm64:7"
)

# CloudFormation stack names
STACK_NAME_PATTERN = re.compile(r"^[A-Za-z][-A-Za-z0-9]*$")


class CustomCloud9Ssm(Construct):
    """
    Cloud9 EC2 environment whose instance is configured through an SSM document.

    Attributes:
        ec2_role: Role attached to the Cloud9 instance through the instance profile. It
            holds the permissions needed by the statements of the SSM document.
    """

    DEFAULT_EBS_SIZE = 50
    DEFAULT_INSTANCE_TYPE = "t3.large"
    DEFAULT_IMAGE_ID = "amazonlinux-2023-x86_64"
    DEFAULT_DOCUMENT_NAME = "SsmDocument"
    DEFAULT_DOCUMENT_FILE_NAME = "default_document.yml"
    RESIZE_STEP_FILE_NAME = "resize_ebs_step.yml"
    DEPLOY_CDK_STEP_FILE_NAME = "deploy_cdk_from_tar.yml"
    EC2_ROLE_NAME = "CustomCloud9SsmEc2Role"
    TARGET_TAG_KEY = "stack-id"

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        *,
        ssm_document_props: Optional[Mapping[str, Any]] = None,
        cloud9_ec2_props: Optional[Mapping[str, Any]] = None,
        ebs_size: int = DEFAULT_EBS_SIZE,
    ) -> None:
        """
        Args:
            scope: CDK construct scope
            construct_id: Unique identifier for this construct
            ssm_document_props: Keyword arguments for ssm.CfnDocument. When omitted, the
                default document is used and a step resizing the EBS volume to
                ebs_size GiB is added to it.
            cloud9_ec2_props: Keyword arguments for cloud9.CfnEnvironmentEC2. When
                omitted, a t3.large Amazon Linux 2023 environment is created.
            ebs_size: Size in GiB the default document grows the EBS volume to. Ignored
                when ssm_document_props is given.

        Raises:
            ValueError: If ssm_document_props does not include a document name or content
        """
        super().__init__(scope, construct_id)

        if ssm_document_props is not None and not ssm_document_props.get("name"):
            raise ValueError("The document name must be specified.")
        if ssm_document_props is not None and ssm_document_props.get("content") is None:
            raise ValueError("The document content must be specified.")

        stack = Stack.of(self)

        # Cloud9 environment, tagged so the SSM association can target its instance
        if cloud9_ec2_props is None:
            cloud9_ec2_props = {
                "instance_type": self.DEFAULT_INSTANCE_TYPE,
                "image_id": self.DEFAULT_IMAGE_ID,
            }
        cloud9_env = cloud9.CfnEnvironmentEC2(self, "Cloud9Ec2Environment", **cloud9_ec2_props)
        Tags.of(cloud9_env).add(self.TARGET_TAG_KEY, stack.stack_id)

        # Role and instance profile for the Cloud9 instance
        self.ec2_role = iam.Role(
            self,
            "Ec2Role",
            role_name=self.EC2_ROLE_NAME,
            assumed_by=iam.ServicePrincipal("ec2.amazonaws.com"),
            managed_policies=[
                iam.ManagedPolicy.from_aws_managed_policy_name("AmazonSSMManagedInstanceCore"),
            ],
        )

        instance_profile = iam.CfnInstanceProfile(
            self,
            "Ec2InstanceProfile",
            roles=[self.ec2_role.role_name],
        )

        # SSM document
        if ssm_document_props is None:
            self._content = self._load_yaml(self.DEFAULT_DOCUMENT_FILE_NAME)
            self._document = ssm.CfnDocument(
                self,
                "SsmDocument",
                name=self.DEFAULT_DOCUMENT_NAME,
                document_type="Command",
                content=self._content,
            )
            self.resize_ebs_to(ebs_size)
        else:
            document_props = dict(ssm_document_props)
            self._content = self._parse_content(document_props.pop("content"))
            self._document = ssm.CfnDocument(
                self, "SsmDocument", content=self._content, **document_props
            )

        # Association applying the document to the tagged instance
        association = ssm.CfnAssociation(
            self,
            "SsmAssociation",
            name=self._document.name,
            targets=[
                ssm.CfnAssociation.TargetProperty(
                    key=f"tag:{self.TARGET_TAG_KEY}",
                    values=[stack.stack_id],
                )
            ],
        )

        # Custom resource that attaches the instance profile to the Cloud9 instance
        profile_attach_policy = iam.PolicyStatement(
            effect=iam.Effect.ALLOW,
            actions=[
                "ec2:DescribeInstances",
                "ec2:DescribeIamInstanceProfileAssociations",
                "ec2:AssociateIamInstanceProfile",
                "ec2:ReplaceIamInstanceProfileAssociation",
                "ec2:RebootInstances",
                "iam:ListInstanceProfiles",
                "iam:PassRole",
                "ssm:DescribeAssociationExecutions",
                "ssm:DescribeAssociationExecutionTargets",
            ],
            resources=["*"],
        )

        powertools_layer = lambda_.LayerVersion.from_layer_version_arn(
            self,
            "PowertoolsLayer",
            POWERTOOLS_LAYER_ARN.format(region=stack.region),
        )

        on_event_function = self._profile_attach_function(
            "ProfileAttachLambdaFunction",
            handler="index.on_event_handler",
            timeout=Duration.minutes(2),
            policy=profile_attach_policy,
            layer=powertools_layer,
        )
        is_complete_function = self._profile_attach_function(
            "ProfileAttachIsCompleteFunction",
            handler="index.is_complete_handler",
            timeout=Duration.minutes(2),
            policy=profile_attach_policy,
            layer=powertools_layer,
        )

        provider = Provider(
            self,
            "ProfileAttachProvider",
            on_event_handler=on_event_function,
            is_complete_handler=is_complete_function,
            query_interval=Duration.seconds(30),
            total_timeout=Duration.minutes(30),
            log_retention=logs.RetentionDays.ONE_WEEK,
        )

        custom_resource = CustomResource(
            self,
            "CustomResource",
            service_token=provider.service_token,
            properties={
                "stack_id": stack.stack_id,
                "profile_arn": instance_profile.attr_arn,
                "association_id": association.attr_association_id,
            },
        )
        self.instance_id = custom_resource.get_att_string("InstanceId")

        # Add dependencies
        instance_profile.node.add_dependency(self.ec2_role)
        association.node.add_dependency(cloud9_env)
        association.node.add_dependency(self._document)
        custom_resource.node.add_dependency(instance_profile)
        custom_resource.node.add_dependency(association)

    @property
    def document_name(self) -> str:
        return self._document.name

    def add_document_steps(self, steps: str) -> None:
        """
        Adds one or more steps to the mainSteps section of the SSM document.

        Args:
            steps: YAML formatted list with one or more steps
        """
        parsed = yaml.safe_load(steps) or []
        if not isinstance(parsed, list):
            raise ValueError("Document steps must be a YAML list")

        self._content.setdefault("mainSteps", []).extend(parsed)
        self._document.content = self._content
        logger.debug("Added %d step(s) to %s", len(parsed), self.node.path)

    def add_document_parameters(self, parameters: str) -> None:
        """
        Merges one or more parameters into the parameters section of the SSM document.

        Args:
            parameters: YAML formatted mapping of parameter names to definitions
        """
        parsed = yaml.safe_load(parameters) or {}
        if not isinstance(parsed, dict):
            raise ValueError("Document parameters must be a YAML mapping")

        self._content["parameters"] = {**self._content.get("parameters", {}), **parsed}
        self._document.content = self._content

    def resize_ebs_to(self, size: int) -> None:
        """
        Adds a step that resizes the EBS volume of the instance and grants ec2_role the
        permissions it needs.

        Args:
            size: Size in GiB to resize the EBS volume to
        """
        steps = self._load_text(self.RESIZE_STEP_FILE_NAME)
        steps = steps.replace("{{ size }}", str(size))
        self.add_document_steps(steps)

        self.ec2_role.add_to_policy(
            iam.PolicyStatement(
                effect=iam.Effect.ALLOW,
                actions=[
                    "ec2:DescribeInstances",
                    "ec2:DescribeVolumes",
                    "ec2:ModifyVolume",
                    "ec2:DescribeVolumesModifications",
                ],
                resources=["*"],
            )
        )

    def deploy_cdk_project(self, url: str, stack_name: str = "") -> None:
        """
        Adds a step that downloads a compressed CDK project and deploys it, and grants
        ec2_role access to the bootstrap bucket and stacks.

        Args:
            url: Location the tar.gz file is downloaded from with wget
            stack_name: Name of the stack to deploy. All stacks of the project are
                deployed when empty.

        Raises:
            ValueError: If url is empty or contains whitespace, or stack_name is not a
                valid stack name
        """
        if not url or any(char.isspace() for char in url):
            raise ValueError(f"Invalid CDK project URL: {url!r}")
        if stack_name and not STACK_NAME_PATTERN.match(stack_name):
            raise ValueError(f"Invalid stack name: {stack_name!r}")

        # Values land in a shell script
        steps = self._load_text(self.DEPLOY_CDK_STEP_FILE_NAME)
        steps = steps.replace("{{ URL }}", shlex.quote(url))
        steps = steps.replace("{{ STACK_NAME }}", shlex.quote(stack_name))
        self.add_document_steps(steps)

        # Bucket holding the bootstrapped assets
        self.ec2_role.add_to_policy(
            iam.PolicyStatement(
                effect=iam.Effect.ALLOW,
                actions=["s3:*"],
                resources=["arn:aws:s3:::cdk-*"],
            )
        )

        # Bootstrap stack and the stack being deployed
        stack = Stack.of(self)
        self.ec2_role.add_to_policy(
            iam.PolicyStatement(
                effect=iam.Effect.ALLOW,
                actions=["cloudformation:*"],
                resources=[
                    f"arn:aws:cloudformation:{stack.region}:{stack.account}:stack/CDKToolkit/*",
                    f"arn:aws:cloudformation:{stack.region}:{stack.account}:stack/{stack_name}/*",
                ],
            )
        )

    def _profile_attach_function(
        self,
        construct_id: str,
        handler: str,
        timeout: Duration,
        policy: iam.PolicyStatement,
        layer: lambda_.ILayerVersion,
    ) -> lambda_.Function:
        return lambda_.Function(
            self,
            construct_id,
            runtime=lambda_.Runtime.PYTHON_3_12,
            architecture=lambda_.Architecture.ARM_64,
            handler=handler,
            code=lambda_.Code.from_asset(str(PROFILE_ATTACH_CODE_DIR)),
            timeout=timeout,
            retry_attempts=0,
            initial_policy=[policy],
            layers=[layer],
            environment={
                "POWERTOOLS_SERVICE_NAME": "custom-cloud9-ssm-profile-attach",
                "LOG_LEVEL": "INFO",
            },
        )

    @staticmethod
    def _parse_content(content: Any) -> dict:
        if isinstance(content, str):
            return yaml.safe_load(content) or {}
        return copy.deepcopy(dict(content))

    @classmethod
    def _load_yaml(cls, file_name: str) -> dict:
        return yaml.safe_load(cls._load_text(file_name)) or {}

    @staticmethod
    def _load_text(file_name: str) -> str:
        """Load an asset file shipped with this construct"""
        asset_file = ASSETS_DIR / file_name

        if not asset_file.exists():
            raise FileNotFoundError(f"Asset file not found: {asset_file}")

        return asset_file.read_text()
