"""Read-only query selectors."""

from approval_kernel.selectors.base import BaseSelector
from approval_kernel.selectors.instance_selector import InstanceSelector

__all__ = ["BaseSelector", "InstanceSelector"]
