"""Entity type tables shared by lookup, submission and editing."""

from __future__ import annotations

# Hash subtypes in precedence order: the first one tagged on an entity wins.
HASH_TYPE_PRECEDENCE: tuple[str, ...] = ("MD5", "SHA1", "SHA256")

SUPPORTED_ENTITY_TYPES = frozenset({
    "IPv4",
    "IPv6",
    "domain",
    "email",
    "MAC",
    "MD5",
    "SHA1",
    "SHA256",
    "url",
})

IP_ENTITY_TYPES = frozenset({"IPv4", "IPv6"})

# Loopback, all-zeros and broadcast are never looked up
IGNORED_IPS = frozenset({"127.0.0.1", "255.255.255.255", "0.0.0.0"})

# OpenCTI entity_type used as x_opencti_main_observable_type / observable type
OBSERVABLE_TYPE_BY_ENTITY_TYPE = {
    "IPv4": "IPv4-Addr",
    "IPv6": "IPv6-Addr",
    "domain": "Domain-Name",
    "email": "Email-Addr",
    "MD5": "StixFile",
    "SHA1": "StixFile",
    "SHA256": "StixFile",
    "url": "Url",
    "MAC": "Mac-Addr",
}

# Argument name of stixCyberObservableAdd for each entity type
OBSERVABLE_INPUT_KEY_BY_ENTITY_TYPE = {
    "IPv4": "IPv4Addr",
    "IPv6": "IPv6Addr",
    "domain": "DomainName",
    "email": "EmailAddr",
    "MD5": "StixFile",
    "SHA1": "StixFile",
    "SHA256": "StixFile",
    "url": "Url",
    "MAC": "MacAddr",
}

HUMAN_READABLE_TYPE_BY_ENTITY_TYPE = {
    "IPv4": "IPv4 address",
    "IPv6": "IPv6 address",
    "domain": "Domain name",
    "email": "Email address",
    "MD5": "File",
    "SHA1": "File",
    "SHA256": "File",
    "url": "URL",
    "MAC": "MAC address",
}
UNKNOWN_HUMAN_READABLE_TYPE = "unknown type"

STIX_PATTERN_TEMPLATES = {
    "IPv4": "[ipv4-addr:value = '{value}']",
    "IPv6": "[ipv6-addr:value = '{value}']",
    "domain": "[domain-name:value = '{value}']",
    "email": "[email-addr:value = '{value}']",
    "MD5": "[file:hashes.MD5 = '{value}']",
    "SHA1": "[file:hashes.'SHA-1' = '{value}']",
    "SHA256": "[file:hashes.'SHA-256' = '{value}']",
    "url": "[url:value = '{value}']",
    "MAC": "[mac-addr:value = '{value}']",
}

ITEM_KINDS = ("indicator", "observable")

DEFAULT_SCORE = 50
DEFAULT_CONFIDENCE = 50
DEFAULT_CREATOR = "--"
DEFAULT_LABEL_COLOR = "#4f81bd"

SUBMISSION_DISPLAY_VALUE = "OpenCTI IOC Submission"
SUMMARY_ITEMS_FOUND = "Items Found"
SUMMARY_NEW_ITEMS = "New Items"

IDENTITY_TYPES = ("Individual", "Organization", "System")
