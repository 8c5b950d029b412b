"""
Privacy sanitizer — secret redaction, private-block stripping and
retention policy for stored memories.
"""

from .patterns import REDACTED, PRIVATE, RULES, RedactionRule, default_rules, compile_user_pattern
from .privacy import PrivacyManager, PrivacyConfig, StorageValidation, MAX_STORED_CONTENT
