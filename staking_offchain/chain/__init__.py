"""
Chain access: web3 gateway and Hardhat artifact lookup
"""

from .artifacts import Artifact, ArtifactStore
from .gateway import ChainGateway

__all__ = ['Artifact', 'ArtifactStore', 'ChainGateway']
