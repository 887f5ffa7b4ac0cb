import httpx
from typing import Dict, Any, Optional
from loguru import logger

from orchestration.errors import TransientError


class ClearbitEnricher:
    """Data enrichment provider using Clearbit API (with fallback to mock data)."""

    def __init__(self, api_key: Optional[str] = None, timeout: float = 20.0):
        self.api_key = api_key
        self.timeout = timeout
        self.person_url = "https://person.clearbit.com/v2/combined/find"
        self.company_url = "https://company.clearbit.com/v2/companies/find"

    @property
    def source(self) -> str:
        return "clearbit" if self.api_key else "mock"

    def _get(self, url: str, params: Dict[str, str]) -> Dict[str, Any]:
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.get(url, params=params, headers={"Authorization": f"Bearer {self.api_key}"})
                response.raise_for_status()
                return response.json()
        except (httpx.TimeoutException, httpx.TransportError) as e:
            raise TransientError("clearbit", f"{type(e).__name__}: {e}") from e
        except httpx.HTTPStatusError as e:
            if e.response.status_code >= 500 or e.response.status_code == 429:
                raise TransientError("clearbit", f"HTTP {e.response.status_code}") from e
            # 404/422: nothing known about this person or domain
            logger.warning(f"Clearbit lookup returned {e.response.status_code} for {params}")
            return {}

    def enrich_person(self, email: str) -> Dict[str, Any]:
        """Enrich person data using Clearbit Person API."""
        if not self.api_key:
            logger.warning("No Clearbit API key, using mock data")
            return self._mock_person_data(email)
        return self._get(self.person_url, {"email": email})

    def enrich_company(self, domain: str) -> Dict[str, Any]:
        """Enrich company data using Clearbit Company API."""
        if not self.api_key:
            logger.warning("No Clearbit API key, using mock data")
            return self._mock_company_data(domain)
        data = self._get(self.company_url, {"domain": domain})
        return {"company": data} if data and "company" not in data else data

    def enrich(self, domain: Optional[str] = None, email: Optional[str] = None) -> Dict[str, Any]:
        """
        Enrich lead data with company and person information.

        Raises:
            TransientError: Clearbit unreachable or failing; retry later
        """
        company_data = self.enrich_company(domain) if domain else {}
        person_data = self.enrich_person(email) if email else {}
        return {
            "company": company_data.get("company", {}),
            "person": person_data.get("person", {}),
            "enrichment_source": self.source,
        }

    def _mock_person_data(self, email: str) -> Dict[str, Any]:
        return {
            "person": {
                "email": email,
                "employment": {"title": "Director of Operations", "seniority": "director"},
                "seniority": "director",
            }
        }

    def _mock_company_data(self, domain: str) -> Dict[str, Any]:
        return {
            "company": {
                "domain": domain,
                "name": f"Mock Company ({domain})",
                "employees": 120,
                "industry": "SaaS",
                "tech": ["AWS", "Python"],
                "location": {"country": "US"},
            }
        }
