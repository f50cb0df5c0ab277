"""
Feature codes gated by plan entitlements and usage quotas.

Feature rows (global catalog) and PlanFeature rows reference these codes.
Quota limits are keyed by the same codes inside Plan.limits / PlanFeature.limits.
"""

from enum import Enum


class FeatureCode(str, Enum):
    """Gated product features."""
    LEADS = "leads"
    CAMPAIGNS = "campaigns"
    TEMPLATES = "templates"
    WORKFLOWS = "workflows"
    ANALYTICS = "analytics"
    NETWORK = "network"
    QUICK_REPLIES = "quick_replies"
    CATALOG = "catalog"
    LMS = "lms"
    META_ADS = "meta_ads"
    DRIP_SEQUENCES = "drip_sequences"
    WHITE_LABEL = "white_label"
    API_ACCESS = "api_access"


def is_unlimited(limit) -> bool:
    """
    A limit of None, 0 or a negative number means unlimited.

    Legacy plan data used -1 for unlimited; 0 and missing keys mean the same.
    """
    if limit is None:
        return True
    return int(limit) <= 0
