"""
Operator-side contract deployment: proxies, upgrades, explorer verification
"""

from .proxy_manager import ProxyLifecycleManager
from .verifier import ExplorerVerifier, VerificationTask

__all__ = ['ProxyLifecycleManager', 'ExplorerVerifier', 'VerificationTask']
