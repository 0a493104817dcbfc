from .client import ProvisioningClient

__all__ = ['ProvisioningClient']
