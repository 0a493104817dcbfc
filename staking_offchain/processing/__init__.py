from .keeper import BalanceTriggeredKeeper
from .registration import RegistrationPipeline

__all__ = ['BalanceTriggeredKeeper', 'RegistrationPipeline']
