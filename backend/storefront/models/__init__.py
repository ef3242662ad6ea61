from .inventory import ProductInventory
from .orders import Order
from .referrals import ReferralPartner, ReferralCode, ReferralAttribution
from .throttling import RateLimitBucket

__all__ = [
    'ProductInventory',
    'Order',
    'ReferralPartner', 'ReferralCode', 'ReferralAttribution',
    'RateLimitBucket',
]
