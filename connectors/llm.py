import json
from typing import Tuple, List, Dict, Any, Optional
import openai
from openai import OpenAI
from loguru import logger

from orchestration.errors import TransientError, PermanentError

CONTENT_KINDS = {
    "acknowledgment": """Write a warm acknowledgment email thanking them for reaching out.
Set expectation that a specialist will follow up within 24 hours.""",
    "follow_up": """Write a friendly follow-up email.
Reference their original inquiry naturally.
Offer additional value (resource, insight, or question to engage).""",
    "demo_offer": """Write a demo invitation email.
Highlight 2-3 key benefits relevant to their role/industry.""",
    "case_study": """Write an email sharing a relevant case study.
Focus on measurable outcomes (%, time saved, ROI).""",
    "break_up": """Write a respectful "break up" email.
Leave the door open for future contact. Keep it short.""",
    "no_show_reminder": """They missed a scheduled call. Write a gentle, no-pressure note
offering to rebook a meeting of the same length.""",
    "no_show_short_meeting": """They missed a second call. Offer a quick 15-minute slot
instead, or an async walkthrough if that suits them better.""",
    "no_show_async": """They have missed several calls. Offer async options only
(recorded demo, overview document) and ask what would be most useful.""",
    "no_show_deprioritize": """They have repeatedly missed calls. Write a short, polite note
saying we will step back and they can reach out whenever ready.""",
    "proposal": "Write a short cover email introducing a proposal document.",
}


def classify_openai_error(e: Exception) -> Exception:
    """Map an openai exception to the pipeline's transient/permanent taxonomy."""
    if isinstance(e, (openai.APITimeoutError, openai.APIConnectionError,
                      openai.RateLimitError, openai.InternalServerError)):
        return TransientError("openai", str(e))
    return PermanentError("openai", str(e))


class LLMClient:
    """LLM client for content generation, scoring hints and research."""

    def __init__(self, api_key: Optional[str] = None, model: str = "gpt-4o-mini", timeout: float = 20.0):
        self.api_key = api_key
        self.model = model
        self.client = None

        if not self.api_key:
            logger.warning("No OpenAI API key provided, using mock mode")
        else:
            self.client = OpenAI(api_key=self.api_key, timeout=timeout, max_retries=0)

    @property
    def mock(self) -> bool:
        return self.client is None

    def _chat_json(self, system: str, prompt: str, temperature: float = 0.3, max_tokens: int = 800) -> Dict[str, Any]:
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": prompt},
                ],
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except openai.OpenAIError as e:
            raise classify_openai_error(e) from e

        content = response.choices[0].message.content or ""
        return self._parse_json(content)

    def _parse_json(self, content: str) -> Dict[str, Any]:
        if "{" in content and "}" in content:
            start = content.find("{")
            end = content.rfind("}") + 1
            try:
                return json.loads(content[start:end])
            except json.JSONDecodeError as e:
                raise PermanentError("openai", f"Unparseable JSON response: {e}") from e
        raise PermanentError("openai", "Response did not contain JSON")

    # Content generation

    def generate_content(self, kind: str, lead_context: Dict[str, Any]) -> Dict[str, Any]:
        """
        Generate an outbound message for a lead.

        Args:
            kind: one of CONTENT_KINDS (unknown kinds get a generic instruction)
            lead_context: flat lead view (Lead.context())

        Returns:
            {"subject": str, "body": str, "callToAction": str, "personalization": [...], "type": kind}

        Raises:
            TransientError: timeout, connection error, rate limit, 5xx
            PermanentError: rejected request or unusable response
        """
        if self.mock:
            logger.info(f"Using mock content generation: {kind}")
            return self._mock_content(kind, lead_context)

        prompt = self._build_content_prompt(kind, lead_context)
        result = self._chat_json(self._get_content_rubric(), prompt)

        if not result.get("subject") or not result.get("body"):
            raise PermanentError("openai", f"Generated {kind} content is missing subject or body")

        logger.info(f"LLM content generated: {kind} '{result['subject']}'")
        return {
            "subject": result["subject"],
            "body": result["body"],
            "callToAction": result.get("callToAction", ""),
            "personalization": result.get("personalization", []),
            "type": kind,
        }

    def _get_content_rubric(self) -> str:
        return """You are a B2B sales development specialist writing personalized emails.

GUIDELINES:
- Professional but warm
- Personalize based on the lead's industry, role and original inquiry
- Focus on value and outcomes, not features
- One clear call-to-action
- 150-250 words, use the lead's first name

Return ONLY valid JSON in this format:
{"subject": "...", "body": "...", "callToAction": "...", "personalization": ["..."]}"""

    def _build_content_prompt(self, kind: str, ctx: Dict[str, Any]) -> str:
        instructions = CONTENT_KINDS.get(kind, "Write a professional outreach email.")
        return f"""Generate a personalized email for this lead:

LEAD:
- Name: {ctx.get('full_name') or 'N/A'}
- Company: {ctx.get('company') or 'N/A'}
- Role: {ctx.get('job_title') or 'Unknown'}
- Industry: {ctx.get('industry') or 'Unknown'}

ORIGINAL INQUIRY:
{ctx.get('original_message') or 'General website inquiry'}

CURRENT SCORE: {ctx.get('score', 0)}/100

EMAIL TYPE: {kind}
INSTRUCTIONS: {instructions}"""

    def _mock_content(self, kind: str, ctx: Dict[str, Any]) -> Dict[str, Any]:
        name = ctx.get("first_name") or "there"
        company = ctx.get("company") or "your team"

        subjects = {
            "acknowledgment": f"Thanks for reaching out, {name}",
            "follow_up": f"Following up on your inquiry, {name}",
            "demo_offer": f"A personalized demo for {company}",
            "case_study": f"How teams like {company} cut review time",
            "break_up": "Should I close your file?",
            "no_show_reminder": "Sorry we missed you, let's find another time",
            "no_show_short_meeting": "How about a quick 15 minutes instead?",
            "no_show_async": "Prefer async? Here's a recorded walkthrough",
            "no_show_deprioritize": "We'll step back for now",
            "proposal": f"Your proposal for {company}",
        }
        subject = subjects.get(kind, f"A note for {company}")
        body = (
            f"Hi {name},\n\n"
            f"{CONTENT_KINDS.get(kind, 'Thanks for your interest.').splitlines()[0]}\n\n"
            "Best regards,\nSales Team"
        )
        return {
            "subject": subject,
            "body": body,
            "callToAction": "Reply to this email",
            "personalization": [p for p in (ctx.get("first_name"), ctx.get("company")) if p],
            "type": kind,
        }

    # Scoring

    def score_lead(self, lead_context: Dict[str, Any], rule_score: int) -> Tuple[int, List[str]]:
        """
        Score lead with the LLM rubric. Falls back to the rule score on any failure.

        Returns:
            Tuple of (score 0-100, reasons)
        """
        if self.mock:
            logger.info("Using mock LLM scoring")
            return self._mock_scoring(lead_context, rule_score)

        try:
            result = self._chat_json(self._get_scoring_rubric(), self._build_scoring_prompt(lead_context, rule_score),
                                     temperature=0.1, max_tokens=500)
            score = int(round(float(result["score"])))
            reasons = result.get("reasons") or []
            if not isinstance(reasons, list):
                reasons = [str(reasons)]
            logger.info(f"LLM scoring completed: {score}")
            return max(0, min(100, score)), reasons
        except (TransientError, PermanentError, KeyError, TypeError, ValueError) as e:
            logger.error(f"LLM scoring failed: {e}")
            return self._mock_scoring(lead_context, rule_score)

    def _get_scoring_rubric(self) -> str:
        return """You are a Senior RevOps Analyst tasked with scoring B2B leads.

SCORING CRITERIA:
- Score range: 0 to 100
- Preferred titles: Director+, VP, C-level, Head of
- Strong buying intent in the original message raises the score
- Penalty for free email domains (gmail, yahoo, etc.)

Return ONLY valid JSON in this format:
{"score": 85, "reasons": ["Seniority: Director", "Clear buying intent"]}"""

    def _build_scoring_prompt(self, ctx: Dict[str, Any], rule_score: int) -> str:
        enrichment = ctx.get("enrichment") or {}
        return f"""Score this lead based on the rubric:

LEAD DATA:
- Email: {ctx.get('email') or 'N/A'}
- Company: {ctx.get('company') or 'N/A'}
- Title: {ctx.get('job_title') or 'N/A'}
- Industry: {ctx.get('industry') or 'N/A'}
- Country: {ctx.get('country') or 'N/A'}
- Message: {ctx.get('original_message') or 'N/A'}

ENRICHMENT:
- Headcount: {enrichment.get('company', {}).get('employees', 'N/A')}
- Seniority: {enrichment.get('person', {}).get('seniority', 'N/A')}

Rule-based score hint: {rule_score}

Score this lead and provide specific reasons:"""

    def _mock_scoring(self, ctx: Dict[str, Any], rule_score: int) -> Tuple[int, List[str]]:
        # Mock mode agrees with the rules so blended scores stay deterministic
        return rule_score, ["Rule-based score (LLM unavailable)"]

    # Research

    def research_insights(self, lead_context: Dict[str, Any]) -> Dict[str, Any]:
        """Company/industry insights used by the research capability."""
        if self.mock:
            logger.info("Using mock research insights")
            return self._mock_research(lead_context)

        prompt = f"""Research this lead's company and suggest how to approach them:

COMPANY: {lead_context.get('company') or 'N/A'}
DOMAIN: {lead_context.get('domain') or 'N/A'}
INDUSTRY: {lead_context.get('industry') or 'N/A'}
ROLE: {lead_context.get('job_title') or 'N/A'}
INQUIRY: {lead_context.get('original_message') or 'N/A'}

Return ONLY valid JSON:
{{"painPoints": ["..."], "talkingPoints": ["..."], "recommendedApproach": "...", "confidence": 0.0}}"""
        result = self._chat_json("You are a B2B sales researcher.", prompt)
        logger.info(f"LLM research completed for {lead_context.get('company')}")
        return result

    def _mock_research(self, ctx: Dict[str, Any]) -> Dict[str, Any]:
        industry = ctx.get("industry") or "their industry"
        return {
            "painPoints": [f"Manual processes common in {industry}"],
            "talkingPoints": [f"Outcomes for {industry} teams"],
            "recommendedApproach": "Lead with a relevant case study",
            "confidence": 0.5,
        }

