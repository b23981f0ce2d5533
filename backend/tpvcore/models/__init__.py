from .tenancy import Organization, Warehouse, SubscriptionPlan, Subscription, SubscriptionAddOn
from .auth import Operator
from .devices import Device, ActivationToken, DeviceSession
from .fiscal import FiscalSequence, VoidedSequence, LedgerHead, FiscalRecord, FiscalTaxLine
from .security import SecurityEvent

__all__ = [
    'Organization', 'Warehouse', 'SubscriptionPlan', 'Subscription', 'SubscriptionAddOn',
    'Operator',
    'Device', 'ActivationToken', 'DeviceSession',
    'FiscalSequence', 'VoidedSequence', 'LedgerHead', 'FiscalRecord', 'FiscalTaxLine',
    'SecurityEvent',
]
