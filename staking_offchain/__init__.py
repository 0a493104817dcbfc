"""
Off-chain automation for a liquid staking protocol: proxy deployment and
upgrades, validator provisioning and the balance-triggered registration keeper.
"""

__version__ = "0.1.0"
