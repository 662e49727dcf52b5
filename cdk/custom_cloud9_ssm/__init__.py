from .custom_cloud9_ssm import CustomCloud9Ssm

__all__ = ["CustomCloud9Ssm"]
