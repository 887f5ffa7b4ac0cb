from typing import Dict, Any, List, Tuple
from loguru import logger

REQUIRED_FIELDS = ["email", "company"]


def normalize_lead_payload(raw: Dict[str, Any]) -> Tuple[Dict[str, Any], List[str]]:
    """Normalize and validate an incoming lead payload into Lead fields."""
    logger.info(f"Starting capture for lead: {raw.get('email', 'unknown')}")

    email = (raw.get("email") or raw.get("properties", {}).get("email", {}).get("value", "")).strip().lower()
    company = raw.get("company") or raw.get("company_name") or raw.get("properties", {}).get("company")
    domain = (raw.get("website") or raw.get("domain") or "").replace("https://", "").replace("http://", "").split("/")[0]

    first_name, last_name = raw.get("first_name"), raw.get("last_name")
    if not first_name and raw.get("full_name"):
        first_name, _, last_name = raw["full_name"].strip().partition(" ")

    fields = {
        "email": email or None,
        "first_name": first_name or None,
        "last_name": last_name or None,
        "company": company,
        "job_title": raw.get("title") or raw.get("job_title"),
        "industry": raw.get("industry"),
        "country": raw.get("country"),
        "domain": domain or None,
        "original_message": raw.get("message") or raw.get("original_message"),
        "source": raw.get("source") or "webhook",
    }

    errors = []
    missing_fields = [field for field in REQUIRED_FIELDS if not fields.get(field)]
    if missing_fields:
        errors.append(f"Missing required fields: {missing_fields}")
    if email and "@" not in email:
        errors.append(f"Invalid email: {email}")

    return fields, errors
