from typing import Dict, Any, List, Tuple
from loguru import logger

from connectors.llm import LLMClient
from orchestration.state import Lead, clamp_score, category_for_score

HARD_RULES = {
    "min_headcount": 20,
    "allowed_countries": ["US", "CA", "UK", "GB", "DE", "FR", "MA", "AE", "SA", "EG"],
    "blocked_free_email": True,
}

ICP_INDUSTRIES = {"saas", "fintech", "ecommerce", "healthtech", "edtech", "healthcare", "insurance"}
BUYING_ROLES = ["head", "lead", "director", "vp", "cxo", "chief", "ceo", "cto", "cfo", "manager"]
INTENT_WORDS = ["demo", "pricing", "quote", "proposal", "buy", "purchase", "trial", "asap", "urgent"]
FREE_DOMAINS = ("gmail.com", "yahoo.com", "outlook.com", "hotmail.com")


def rule_score(lead: Lead) -> Tuple[int, Dict[str, int], List[str]]:
    """Calculate base score (0-100) using hard-coded business rules."""
    company = lead.enrichment.get("company", {})
    breakdown: Dict[str, int] = {}
    reasons: List[str] = []

    # Headcount scoring
    headcount = company.get("employees") or 0
    points = 0
    if headcount >= HARD_RULES["min_headcount"]:
        points += 15
        if headcount >= 100:
            points += 5  # Bonus for larger companies
    breakdown["company_size"] = points
    if points:
        reasons.append(f"Headcount: {headcount}")

    # Industry scoring (ICP)
    industry = (lead.industry or company.get("industry") or "").lower()
    breakdown["industry_fit"] = 20 if industry in ICP_INDUSTRIES else 0
    if breakdown["industry_fit"]:
        reasons.append(f"ICP match: {industry}")

    # Title scoring (buying authority)
    title = (lead.job_title or "").lower()
    breakdown["authority"] = 20 if any(role in title for role in BUYING_ROLES) else 0
    if breakdown["authority"]:
        reasons.append(f"Seniority: {lead.job_title}")

    # Intent in the original inquiry
    message = (lead.original_message or "").lower()
    intent_hits = sum(1 for word in INTENT_WORDS if word in message)
    breakdown["intent"] = min(25, intent_hits * 10)
    if intent_hits:
        reasons.append("Buying intent in inquiry")

    # Country scoring
    country = (lead.country or "").upper()
    breakdown["geography"] = 10 if country in HARD_RULES["allowed_countries"] else 0

    # Free email penalty
    email = (lead.email or "").lower()
    if HARD_RULES["blocked_free_email"] and email.endswith(FREE_DOMAINS):
        breakdown["free_email_penalty"] = -30
        reasons.append("Free email domain")

    # Technology stack bonus
    breakdown["tech_stack"] = 10 if company.get("tech") else 0

    return clamp_score(sum(breakdown.values())), breakdown, reasons


class ScoringService:
    """Hybrid lead scoring: business rules blended 50/50 with the LLM rubric."""

    def __init__(self, llm: LLMClient):
        self.llm = llm

    def score(self, lead: Lead) -> Dict[str, Any]:
        """
        Returns:
            {"totalScore": int, "category": Category, "breakdown": dict, "reasoning": str}
        """
        logger.info(f"Starting scoring for lead: {lead.id}")

        base_score, breakdown, reasons = rule_score(lead)
        logger.info(f"Rule-based score: {base_score}")

        llm_score, llm_reasons = self.llm.score_lead(lead.context(), base_score)
        logger.info(f"LLM score: {llm_score}")

        final_score = clamp_score(0.5 * base_score + 0.5 * llm_score)
        breakdown = dict(breakdown, rules=base_score, llm=llm_score)
        category = category_for_score(final_score)

        logger.info(f"Final score: {final_score} ({category.value}) for {lead.id}")
        return {
            "totalScore": final_score,
            "category": category,
            "breakdown": breakdown,
            "reasoning": "; ".join(reasons + [r for r in llm_reasons if r not in reasons]),
        }
