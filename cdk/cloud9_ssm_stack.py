from aws_cdk import (
    CfnOutput,
    Stack,
)
from constructs import Construct

from custom_cloud9_ssm import CustomCloud9Ssm


class Cloud9SsmStack(Stack):
    """
    Cloud9 environment configured from CDK context:

        instance_type, image_id    Cloud9 EC2 environment settings
        ebs_size                   GiB to grow the EBS volume to
        cdk_project_url            tar.gz of a CDK project to deploy from the instance
        cdk_project_stack_name     stack of that project to deploy, all when unset
    """

    def __init__(self, scope: Construct, construct_id: str, **kwargs):
        super().__init__(scope, construct_id, **kwargs)

        instance_type = self.node.try_get_context("instance_type")
        image_id = self.node.try_get_context("image_id")

        cloud9_ec2_props = None
        if instance_type or image_id:
            cloud9_ec2_props = {
                "instance_type": instance_type or CustomCloud9Ssm.DEFAULT_INSTANCE_TYPE,
                "image_id": image_id or CustomCloud9Ssm.DEFAULT_IMAGE_ID,
            }

        ebs_size = self.node.try_get_context("ebs_size")

        cloud9_ssm = CustomCloud9Ssm(
            self,
            "CustomCloud9Ssm",
            cloud9_ec2_props=cloud9_ec2_props,
            ebs_size=int(ebs_size) if ebs_size is not None else CustomCloud9Ssm.DEFAULT_EBS_SIZE,
        )

        project_url = self.node.try_get_context("cdk_project_url")
        if project_url:
            cloud9_ssm.deploy_cdk_project(
                project_url, self.node.try_get_context("cdk_project_stack_name") or ""
            )

        # Outputs
        CfnOutput(
            self,
            "Ec2RoleArn",
            value=cloud9_ssm.ec2_role.role_arn,
            description="Cloud9 instance role ARN",
        )
        CfnOutput(
            self, "SsmDocumentName", value=cloud9_ssm.document_name, description="SSM document name"
        )
        CfnOutput(
            self, "InstanceId", value=cloud9_ssm.instance_id, description="Cloud9 instance ID"
        )
