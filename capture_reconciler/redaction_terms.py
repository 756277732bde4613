"""
Redaction term library — PII patterns, restrictive-covenant terms, presets.

Patterns are plain data so they can be reviewed (and extended) without
touching the detector. A term containing a regex escape or character class
is treated as a pattern; anything else is a literal word or phrase.
"""

from __future__ import annotations

from typing import NamedTuple, Optional


class RedactionTerm(NamedTuple):
    term: str
    category: str
    label: Optional[str] = None
    case_sensitive: bool = False

    @property
    def is_pattern(self) -> bool:
        return "\\b" in self.term or "\\d" in self.term or "[" in self.term


class CategoryInfo(NamedTuple):
    label: str
    severity: str


PII_CATEGORIES: dict[str, CategoryInfo] = {
    "ssn": CategoryInfo("Social Security Number", "critical"),
    "credit_card": CategoryInfo("Credit Card", "critical"),
    "bank_account": CategoryInfo("Bank Account", "critical"),
    "routing_number": CategoryInfo("Routing Number", "high"),
    "email": CategoryInfo("Email Address", "medium"),
    "phone": CategoryInfo("Phone Number", "medium"),
    "dob": CategoryInfo("Date of Birth", "high"),
    "drivers_license": CategoryInfo("Driver's License", "critical"),
    "passport": CategoryInfo("Passport Number", "critical"),
    "itin": CategoryInfo("ITIN", "critical"),
    "ein": CategoryInfo("EIN", "high"),
    "medical_record": CategoryInfo("Medical Record #", "critical"),
    "health_insurance": CategoryInfo("Health Insurance ID", "critical"),
    "medicare": CategoryInfo("Medicare/Medicaid ID", "critical"),
    "ip_address": CategoryInfo("IP Address", "medium"),
    "vin": CategoryInfo("Vehicle ID (VIN)", "high"),
    "address": CategoryInfo("Physical Address", "medium"),
    "name": CategoryInfo("Person Name", "medium"),
}


# ─── PII Patterns ────────────────────────────────────────────────────

PII_KEYWORDS: list[RedactionTerm] = [
    # Critical
    RedactionTerm(r"\b\d{3}[\s.-]?\d{2}[\s.-]?\d{4}\b", "ssn", "SSN"),
    RedactionTerm(r"\bSSN[:\s]*\d{3}[\s.-]?\d{2}[\s.-]?\d{4}\b", "ssn", "SSN (labeled)"),
    RedactionTerm(r"\b9\d{2}[\s.-]?\d{2}[\s.-]?\d{4}\b", "itin", "ITIN"),
    RedactionTerm(r"\b4\d{3}[\s.-]?\d{4}[\s.-]?\d{4}[\s.-]?\d{4}\b", "credit_card", "Visa"),
    RedactionTerm(r"\b5[1-5]\d{2}[\s.-]?\d{4}[\s.-]?\d{4}[\s.-]?\d{4}\b", "credit_card", "MasterCard"),
    RedactionTerm(r"\b3[47]\d{2}[\s.-]?\d{6}[\s.-]?\d{5}\b", "credit_card", "Amex"),
    RedactionTerm(r"\b6(?:011|5\d{2})[\s.-]?\d{4}[\s.-]?\d{4}[\s.-]?\d{4}\b", "credit_card", "Discover"),
    RedactionTerm(r"\b\d{4}[\s.-]?\d{4}[\s.-]?\d{4}[\s.-]?\d{4}\b", "credit_card", "Card Number"),
    RedactionTerm(r"\b(?:account|acct)[#:\s]*\d{8,17}\b", "bank_account", "Account Number"),
    RedactionTerm(r"\b\d{8,17}\b", "bank_account", "Potential Account"),
    RedactionTerm(r"\b[0-3]\d{8}\b", "routing_number", "Routing Number"),
    RedactionTerm(r"\b(?:routing|aba)[#:\s]*\d{9}\b", "routing_number", "ABA Routing"),
    RedactionTerm(r"\b[A-Z]{1,2}\d{6,8}\b", "drivers_license", "License #"),
    RedactionTerm(r"\b(?:DL|DLN|license)[#:\s]*[A-Z0-9]{6,12}\b", "drivers_license", "Driver License"),
    RedactionTerm(r"\b[A-Z]{1,2}\d{6,9}\b", "passport", "Passport #"),
    RedactionTerm(r"\b(?:passport)[#:\s]*[A-Z0-9]{6,9}\b", "passport", "Passport Number"),
    # Healthcare
    RedactionTerm(r"\b(?:MRN|medical record)[#:\s]*[A-Z0-9]{6,15}\b", "medical_record", "MRN"),
    RedactionTerm(r"\b(?:patient id|patient#)[:\s]*[A-Z0-9]{6,12}\b", "medical_record", "Patient ID"),
    RedactionTerm(r"\b(?:policy|member|subscriber)[#:\s]*[A-Z0-9]{8,15}\b", "health_insurance", "Insurance ID"),
    RedactionTerm(r"\b(?:group)[#:\s]*[A-Z0-9]{6,12}\b", "health_insurance", "Group #"),
    RedactionTerm(r"\b[1-9][A-Z][A-Z0-9][0-9][A-Z][A-Z0-9][0-9]{4}[A-Z]{2}\b", "medicare", "Medicare ID"),
    RedactionTerm(r"\b(?:medicare|medicaid)[#:\s]*[A-Z0-9]{9,12}\b", "medicare", "Medicare/Medicaid"),
    # High
    RedactionTerm(r"\b\d{2}[\s.-]?\d{7}\b", "ein", "EIN"),
    RedactionTerm(r"\b(?:EIN|TIN|Tax ID)[:\s]*\d{2}[\s.-]?\d{7}\b", "ein", "Tax ID"),
    RedactionTerm(r"\b(0?[1-9]|1[0-2])/(0?[1-9]|[12][0-9]|3[01])/(19|20)\d{2}\b", "dob", "DOB (MM/DD/YYYY)"),
    RedactionTerm(r"\b(19|20)\d{2}-(0?[1-9]|1[0-2])-(0?[1-9]|[12][0-9]|3[01])\b", "dob", "DOB (YYYY-MM-DD)"),
    RedactionTerm(r"\b(?:DOB|birth date|date of birth)[:\s]*.{6,12}\b", "dob", "DOB (labeled)"),
    RedactionTerm(r"\b[A-HJ-NPR-Z0-9]{17}\b", "vin", "VIN"),
    RedactionTerm(r"\b(?:VIN|vehicle)[#:\s]*[A-HJ-NPR-Z0-9]{17}\b", "vin", "Vehicle ID"),
    # Medium
    RedactionTerm(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b", "email", "Email"),
    RedactionTerm(r"\b\(?\d{3}\)?[\s.-]?\d{3}[\s.-]?\d{4}\b", "phone", "Phone"),
    RedactionTerm(r"\b\+1[\s.-]?\d{3}[\s.-]?\d{3}[\s.-]?\d{4}\b", "phone", "Phone (+1)"),
    RedactionTerm(r"\b\d{10}\b", "phone", "10-digit Phone"),
    RedactionTerm(
        r"\b(?:(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)\.){3}(?:25[0-5]|2[0-4][0-9]|[01]?[0-9][0-9]?)\b",
        "ip_address",
        "IP Address",
    ),
    RedactionTerm(
        r"\b\d{1,5}\s+[A-Za-z]+\s+(?:Street|St|Avenue|Ave|Road|Rd|Boulevard|Blvd|Drive|Dr|Lane|Ln|Way|Court|Ct)\b",
        "address",
        "Street Address",
    ),
    RedactionTerm(r"\b(?:PO|P\.O\.)\s*Box\s*\d+\b", "address", "PO Box"),
    RedactionTerm(r"\b[A-Z]{2}\s*\d{5}(?:-\d{4})?\b", "address", "State + ZIP"),
]


# ─── Restrictive Covenant Terms (CA AB 1466) ─────────────────────────

DEFAULT_REDACTION_KEYWORDS: list[RedactionTerm] = [
    *(RedactionTerm(t, "race", "Race") for t in (
        "caucasian", "white persons", "white people", "negro", "colored",
        "african", "asian", "chinese", "japanese", "mexican", "hispanic",
        "semitic", "aryan",
    )),
    *(RedactionTerm(t, "religion", "Religion") for t in (
        "jewish", "hebrew", "catholic", "muslim",
    )),
    RedactionTerm("foreign born", "national_origin", "National Origin"),
    RedactionTerm("alien", "national_origin", "National Origin"),
    *(RedactionTerm(t, "restrictive_covenant", "Restrictive Covenant") for t in (
        "shall not be sold to",
        "shall not be occupied by",
        "shall not be leased to",
        "shall not be rented to",
        "prohibited from",
        "restricted to",
        "no person of",
        "excepting persons of",
    )),
]


class PatternPreset(NamedTuple):
    label: str
    description: str
    categories: tuple[str, ...]


PATTERN_PRESETS: dict[str, PatternPreset] = {
    "pii-full": PatternPreset(
        "All PII (Comprehensive)",
        "SSN, credit cards, bank accounts, phone, email, DOB, licenses",
        ("ssn", "credit_card", "bank_account", "routing_number", "email", "phone", "dob",
         "drivers_license", "passport", "itin", "ein", "ip_address", "vin", "address"),
    ),
    "pii-financial": PatternPreset(
        "Financial PII",
        "SSN, credit cards, bank accounts, routing numbers, EIN",
        ("ssn", "credit_card", "bank_account", "routing_number", "ein", "itin"),
    ),
    "pii-healthcare": PatternPreset(
        "Healthcare / HIPAA",
        "Medical records, insurance IDs, Medicare/Medicaid, DOB",
        ("medical_record", "health_insurance", "medicare", "dob", "ssn"),
    ),
    "pii-contact": PatternPreset(
        "Contact Information",
        "Email, phone, address, IP address",
        ("email", "phone", "address", "ip_address"),
    ),
    "pii-identity": PatternPreset(
        "Identity Documents",
        "SSN, driver's license, passport, ITIN",
        ("ssn", "drivers_license", "passport", "itin"),
    ),
    "ab1466": PatternPreset(
        "CA AB 1466 (Restrictive Covenants)",
        "Race, religion, national origin discriminatory terms",
        ("race", "religion", "national_origin", "restrictive_covenant"),
    ),
}

COMPLIANCE_CATEGORIES = frozenset(PATTERN_PRESETS["ab1466"].categories)


def keywords_by_categories(categories: list[str] | tuple[str, ...]) -> list[RedactionTerm]:
    wanted = set(categories)
    return [k for k in [*PII_KEYWORDS, *DEFAULT_REDACTION_KEYWORDS] if k.category in wanted]


def keywords_by_preset(preset: str) -> list[RedactionTerm]:
    """Terms for a named preset. Raises KeyError for an unknown preset."""
    return keywords_by_categories(PATTERN_PRESETS[preset].categories)
