"""Name normalization, similarity scoring and counterparty-name screening.

All functions here are pure (no I/O) so the decision table can be unit tested
without a registry.

Similarity is the Sørensen-Dice coefficient over character bigrams of the
normalized names with whitespace removed. Normalization is per registry type:
company names fold legal forms ("LIMITED" -> "LTD"), NHS names expand common
abbreviations, council names drop the "council" boilerplate, and so on.
"""

from __future__ import annotations

import re
from collections import Counter
from typing import Callable

_NON_ALNUM_RE = re.compile(r"[^A-Z0-9 ]+")
_WS_RE = re.compile(r"\s+")


def _collapse(value: str) -> str:
    value = _NON_ALNUM_RE.sub(" ", value)
    return _WS_RE.sub(" ", value).strip()


def normalize_company_name(name: str) -> str:
    """Normalize a company name for comparison.

    >>> normalize_company_name("Acme Limited")
    'ACME LTD'
    """

    n = (name or "").upper().replace("&", " AND ")
    n = re.sub(r"\bPUBLIC LIMITED COMPANY\b", "PLC", n)
    n = re.sub(r"\bLIMITED LIABILITY PARTNERSHIP\b", "LLP", n)
    n = re.sub(r"\bLIMITED\b", "LTD", n)
    n = re.sub(r"\bP\.L\.C\.?", "PLC", n)
    n = re.sub(r"\bL\.T\.D\.?", "LTD", n)
    n = re.sub(r"\bCOMPANY\b", "CO", n)
    n = re.sub(r"^THE\s+", "", n)
    return _collapse(n)


def normalize_healthcare_name(name: str) -> str:
    n = (name or "").upper()
    # Trailing " — notes" added by some publishers.
    n = re.sub(r"\s+—\s+.*$", "", n)
    n = n.replace("&", " AND ")
    n = re.sub(r"\bICB\b", "INTEGRATED CARE BOARD", n)
    n = re.sub(r"\bCCG\b", "CLINICAL COMMISSIONING GROUP", n)
    n = re.sub(r"\bNHS\s*FT\b", "NHS FOUNDATION TRUST", n)
    n = re.sub(r"\bFT\b", "FOUNDATION TRUST", n)
    n = re.sub(r"\bUNI\b", "UNIVERSITY", n)
    n = re.sub(r"\bHOSP\b", "HOSPITAL", n)
    n = re.sub(r"^THE\s+", "", n)
    return _collapse(n)


_COUNCIL_NOISE_RE = re.compile(
    r"\b(LONDON BOROUGH OF|ROYAL BOROUGH OF|BOROUGH OF|CITY OF|COUNTY OF|"
    r"METROPOLITAN BOROUGH COUNCIL|METROPOLITAN DISTRICT COUNCIL|BOROUGH COUNCIL|"
    r"DISTRICT COUNCIL|COUNTY COUNCIL|CITY COUNCIL|COUNCIL)\b"
)


def normalize_council_name(name: str) -> str:
    """Reduce a council name to its place name.

    >>> normalize_council_name("London Borough of Camden")
    'CAMDEN'
    """

    n = (name or "").upper().replace("&", " AND ")
    n = _COUNCIL_NOISE_RE.sub(" ", n)
    n = re.sub(r"^THE\s+", "", n.strip())
    return _collapse(n)


def normalize_government_name(name: str) -> str:
    n = (name or "").upper().replace("&", " AND ")
    n = re.sub(r"\bDEPT\b\.?", "DEPARTMENT", n)
    n = re.sub(r"\bDEPARTMENT OF\b", "DEPARTMENT FOR", n)
    n = re.sub(r"\bHER MAJESTY'?S\b|\bHIS MAJESTY'?S\b", "HM", n)
    n = re.sub(r"^THE\s+", "", n)
    return _collapse(n)


NORMALIZERS: dict[str, Callable[[str], str]] = {
    "company": normalize_company_name,
    "healthcare_provider": normalize_healthcare_name,
    "local_government": normalize_council_name,
    "national_government": normalize_government_name,
}


def normalize_name(name: str, entity_type: str | None) -> str:
    fn = NORMALIZERS.get(entity_type or "", None)
    if fn is None:
        return _collapse((name or "").upper())
    return fn(name)


def _bigrams(value: str) -> Counter[str]:
    return Counter(value[i : i + 2] for i in range(len(value) - 1))


def dice_similarity(first: str, second: str) -> float:
    """Sørensen-Dice coefficient on character bigrams, ignoring whitespace."""

    a = _WS_RE.sub("", first or "")
    b = _WS_RE.sub("", second or "")
    if a == b:
        return 1.0 if a else 0.0
    if len(a) < 2 or len(b) < 2:
        return 0.0

    first_bigrams = _bigrams(a)
    intersection = 0
    for gram in (b[i : i + 2] for i in range(len(b) - 1)):
        if first_bigrams.get(gram, 0) > 0:
            first_bigrams[gram] -= 1
            intersection += 1
    return (2.0 * intersection) / (len(a) + len(b) - 2)


def name_similarity(raw_name: str, candidate_name: str, entity_type: str | None) -> float:
    """Similarity of two names under the normalization profile of `entity_type`."""

    return dice_similarity(
        normalize_name(raw_name, entity_type),
        normalize_name(candidate_name, entity_type),
    )


# --- counterparty name screening ---

_TITLE_RE = re.compile(r"^(DR|MR|MRS|MS|MISS|PROF|REV|DOCTOR|MISTER|PROFESSOR)\s+", re.I)
_COMPANY_SUFFIX_RE = re.compile(r"\b(LTD|LIMITED|PLC|LLP|INC|CORP|CORPORATION)\b", re.I)
_NON_COMPANY_TERMS = re.compile(
    r"^(SALARY|SALARIES|REFUNDS?|PETTY CASH|CASH|SUNDRY|MISC(ELLANEOUS)?|VARIOUS|"
    r"TRANSFER|PAYMENT|PAYROLL|REDACTED|CONFIDENTIAL|WITHHELD|N/A|NOT APPLICABLE|"
    r"UNKNOWN|TBC|TBA)$",
    re.I,
)


def screen_counterparty_name(name: str) -> str | None:
    """Return a reason code if `name` cannot be an organisation, else None.

    Reason codes: empty, purely_numeric, too_short, non_company_term,
    individual_name, id_like, no_vowels.
    """

    trimmed = (name or "").strip()
    if not trimmed:
        return "empty"
    if trimmed.isdigit():
        return "purely_numeric"
    if len(trimmed) < 2:
        return "too_short"
    if _NON_COMPANY_TERMS.match(trimmed):
        return "non_company_term"
    if _TITLE_RE.match(trimmed) and not _COMPANY_SUFFIX_RE.search(trimmed):
        return "individual_name"

    if " " not in trimmed:
        digits = sum(ch.isdigit() for ch in trimmed)
        if len(trimmed) > 6 and digits / len(trimmed) > 0.6:
            return "id_like"
        vowels = sum(ch in "aeiouAEIOU" for ch in trimmed)
        if len(trimmed) > 8 and vowels == 0 and any(ch.isalpha() for ch in trimmed):
            return "no_vowels"

    return None


# --- entity type heuristics ---

_NHS_PRODUCT_KEYWORDS = (
    "wound care", "products", "devices", "consumables", "equipment", "solutions",
    "lot ", "systems", "therapy", "implants", "pumps", "monitoring", "hygiene",
    "testing", "surgical", "sutures", "catheters", "diagnostics", "maintenance",
    "repair", "ppe",
)
_NHS_INTERNAL_KEYWORDS = (
    "ACS ", "CORPORATE ESTATES", "DIGITAL SERVICES", "INPATIENTS", "LOCALITY",
    "FINANCE", "MEDICAL", "ADMINISTRATION",
)
_NHS_INDICATORS = (
    "nhs", "hospital", "trust", " icb", " ccg", "healthcare",
    "integrated care board", "foundation trust",
)


def is_likely_nhs_organisation(name: str) -> bool:
    lower = (name or "").lower()
    if re.fullmatch(r"\d+(\.\d+)?", lower.strip()):
        return False
    if any(k in lower for k in _NHS_PRODUCT_KEYWORDS):
        return False
    if any(k in (name or "") for k in _NHS_INTERNAL_KEYWORDS):
        return False
    return any(k in lower for k in _NHS_INDICATORS)


_COUNCIL_RE = re.compile(r"\b(council|borough of|combined authority)\b", re.I)
_GOV_RE = re.compile(
    r"^(department (for|of)|ministry of|hm |his majesty|her majesty|office (for|of) )"
    r"|\b(cabinet office|home office|foreign, commonwealth|treasury|agency)\b",
    re.I,
)


def guess_entity_type(name: str) -> str:
    """Best-guess registry type for a supplier name; defaults to `company`."""

    if _COMPANY_SUFFIX_RE.search(name or ""):
        return "company"
    if is_likely_nhs_organisation(name):
        return "healthcare_provider"
    if _COUNCIL_RE.search(name or ""):
        return "local_government"
    if _GOV_RE.search(name or ""):
        return "national_government"
    return "company"
