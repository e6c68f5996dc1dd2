"""Session provisioning: creation pipeline and its dispatch queue."""

from pitcrew.services.provisioning.pipeline import CreationPipeline
from pitcrew.services.provisioning.queue import ProvisioningQueue, ProvisioningQueueStats

__all__ = ["CreationPipeline", "ProvisioningQueue", "ProvisioningQueueStats"]
