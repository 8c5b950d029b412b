"""
Redaction rules for the privacy sanitizer.

Each rule has:
* A unique slug and a short description.
* A compiled regex.
* A replacement template.  Rules whose pattern has a ``key`` group keep
  the key and separator (``password: [REDACTED]``) and replace only the
  value; the others replace the whole match.

Rules are applied in catalogue order.  Order matters: ``bearer`` runs
before ``authorization`` so ``Authorization: Bearer abc`` loses the
token, not just the scheme word.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Dict, List, Pattern

REDACTED = "[REDACTED]"
PRIVATE = "[PRIVATE]"


# ------------------------------------------------------------------
# Rule dataclass
# ------------------------------------------------------------------

@dataclass(frozen=True)
class RedactionRule:
    slug: str                  # e.g. "password"
    description: str
    pattern: Pattern[str]
    keep_key: bool = False     # True → pattern has a ``key`` group that survives

    @property
    def replacement(self) -> str:
        return r"\g<key>" + REDACTED if self.keep_key else REDACTED


# ------------------------------------------------------------------
# Helper: compile patterns once at module load
# ------------------------------------------------------------------

def _p(pattern: str, flags: int = re.IGNORECASE) -> Pattern[str]:
    return re.compile(pattern, flags)


# Value following ``key:`` / ``key=``, optionally quoted.
_WORD_VALUE = r"""["']?[\w-]+["']?"""
_DOTTED_VALUE = r"""["']?[\w.-]+["']?"""
_ANY_VALUE = r"""["']?[^"'\s]+["']?"""

PRIVATE_BLOCK = _p(r"<private>[\s\S]*?</private>")
MARKER_RUN = re.compile(r"\[REDACTED\](?:\s*\[REDACTED\])+")
MARKER_SPLIT = re.compile(r"(\[REDACTED\]|\[PRIVATE\])")


# ------------------------------------------------------------------
# Rule catalogue
# ------------------------------------------------------------------

RULES: Dict[str, RedactionRule] = {}


def _register(rule: RedactionRule) -> RedactionRule:
    RULES[rule.slug] = rule
    return rule


# ── API keys ────────────────────────────────────────────────

_register(RedactionRule(
    slug="api_key",
    description="api_key / api-key assignments",
    pattern=_p(r"(?P<key>api[_-]key\s*[:=]\s*)" + _WORD_VALUE),
    keep_key=True,
))

_register(RedactionRule(
    slug="apikey",
    description="apikey assignments",
    pattern=_p(r"(?P<key>apikey\s*[:=]\s*)" + _WORD_VALUE),
    keep_key=True,
))

# ── Passwords and secrets ───────────────────────────────────

_register(RedactionRule(
    slug="password",
    description="password assignments",
    pattern=_p(r"(?P<key>password\s*[:=]\s*)" + _ANY_VALUE),
    keep_key=True,
))

_register(RedactionRule(
    slug="passwd",
    description="passwd assignments",
    pattern=_p(r"(?P<key>passwd\s*[:=]\s*)" + _ANY_VALUE),
    keep_key=True,
))

_register(RedactionRule(
    slug="secret",
    description="secret assignments",
    pattern=_p(r"(?P<key>secret\s*[:=]\s*)" + _DOTTED_VALUE),
    keep_key=True,
))

# ── Tokens ──────────────────────────────────────────────────

_register(RedactionRule(
    slug="token",
    description="token assignments",
    pattern=_p(r"(?P<key>token\s*[:=]\s*)" + _DOTTED_VALUE),
    keep_key=True,
))

_register(RedactionRule(
    slug="bearer",
    description="Bearer credentials",
    pattern=_p(r"(?P<key>bearer\s+)[\w.~+/=-]+"),
    keep_key=True,
))

_register(RedactionRule(
    slug="authorization",
    description="Authorization header values",
    pattern=_p(r"(?P<key>authorization\s*:\s*)" + _DOTTED_VALUE),
    keep_key=True,
))

# ── Private keys ────────────────────────────────────────────

_register(RedactionRule(
    slug="pem_private_key",
    description="PEM private key blocks",
    pattern=_p(
        r"-----BEGIN\s+(?:RSA\s+|EC\s+|OPENSSH\s+)?PRIVATE\s+KEY-----[\s\S]*?"
        r"-----END\s+(?:RSA\s+|EC\s+|OPENSSH\s+)?PRIVATE\s+KEY-----"
    ),
))

_register(RedactionRule(
    slug="pem_encrypted_key",
    description="PEM encrypted private key blocks",
    pattern=_p(
        r"-----BEGIN\s+ENCRYPTED\s+PRIVATE\s+KEY-----[\s\S]*?"
        r"-----END\s+ENCRYPTED\s+PRIVATE\s+KEY-----"
    ),
))

# ── SSH keys ────────────────────────────────────────────────

_register(RedactionRule(
    slug="ssh_key",
    description="OpenSSH public key bodies",
    pattern=_p(r"ssh-(?:rsa|ed25519|dss)\s+[A-Za-z0-9+/=]+"),
))

# ── Cloud credentials ───────────────────────────────────────

_register(RedactionRule(
    slug="aws_access_key",
    description="AWS access key ids",
    pattern=re.compile(r"AKIA[0-9A-Z]{16}"),
))

_register(RedactionRule(
    slug="aws_access_key_id",
    description="aws_access_key_id assignments",
    pattern=_p(r"""(?P<key>aws_access_key_id\s*[:=]\s*)["']?[A-Z0-9]+["']?"""),
    keep_key=True,
))

_register(RedactionRule(
    slug="aws_secret_access_key",
    description="aws_secret_access_key assignments",
    pattern=_p(r"""(?P<key>aws_secret_access_key\s*[:=]\s*)["']?[\w/+=]+["']?"""),
    keep_key=True,
))

# ── Database connection strings ─────────────────────────────

_register(RedactionRule(
    slug="db_url",
    description="Database connection URLs",
    pattern=_p(r"""(?:mongodb(?:\+srv)?|mysql|postgres(?:ql)?|redis)://[^\s"']+"""),
))

_register(RedactionRule(
    slug="db_env",
    description="Database URL environment variables",
    pattern=_p(r"(?P<key>(?:DATABASE_URL|REDIS_URL|MONGO_URI)\s*[:=]\s*)" + _ANY_VALUE),
    keep_key=True,
))


def default_rules() -> List[RedactionRule]:
    """The catalogue in application order."""
    return list(RULES.values())


def compile_user_pattern(pattern: str | Pattern[str]) -> RedactionRule:
    """
    Wrap a user-supplied pattern as a whole-match rule.

    Strings are compiled case-insensitive.  Raises ``re.error`` for an
    invalid expression.
    """
    compiled = pattern if isinstance(pattern, re.Pattern) else _p(pattern)
    return RedactionRule(
        slug=f"user:{compiled.pattern}",
        description="user pattern",
        pattern=compiled,
    )
