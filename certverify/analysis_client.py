"""
Client for the external document-analysis service (Mistral chat completions).

Sends the certificate and its verification-page capture as document
references alongside a fixed prompt, and coerces the model's reply into an
AnalysisResult. Any transport failure, non-success status, timeout or
unparseable reply raises AnalysisError.
"""

import json
import logging
import re
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import requests
from pydantic import ValidationError

from .errors import AnalysisError
from .models import AnalysisResult

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.mistral.ai/v1/chat/completions"
DEFAULT_MODEL = "mistral-small-latest"
DEFAULT_TIMEOUT_SECONDS = 60.0

DOCUMENT_IMAGE_LIMIT = 8
DOCUMENT_PAGE_LIMIT = 64

_JSON_FENCE_RE = re.compile(r"```json\s*([\s\S]*?)\s*```")
_ANY_FENCE_RE = re.compile(r"```\s*([\s\S]*?)\s*```")
_BRACE_SPAN_RE = re.compile(r"\{[\s\S]*\}")

PROMPT_TEMPLATE = """You are a highly specialized expert in educational credential verification. You have been provided with two image inputs:

1. Document A - An image of an academic certificate.
2. Document B - A screenshot of a webpage, purportedly showing verification of Document A.

Additionally, you are given a third input:
3. (verification_url) - The URL of the webpage that claims to verify the certificate.

Your task is to analyze the above materials, extract relevant data and assess the authenticity of the documents. Follow these instructions:

### Certificate Analysis (Document A)

Extract the following information using OCR and visual interpretation:

- student_name - Full name of the certificate holder.
- institution_name - The name of the issuing academic institution.
- degree_or_program - The name of the degree or course completed.
- date_of_issue - The issuance date as printed on the certificate.
- certificate_id - Any unique serial number or verification code.
- certificate_title - The main title or heading of the certificate.
- signatures - List of visible signatures or signatory roles (e.g., "Registrar", "Dean").
- seals_or_stamps - Visual description of any official seals, holograms, or embossed elements.

Provide a document_a_confidence_score (value between 0 and 1) indicating how likely the certificate appears authentic, based on:

- Presence and clarity of official seals/logos
- Professional formatting and consistent layout
- Institutional branding (e.g., logos, watermarks, color themes)
- Valid-looking signatures and their positioning
- Absence of image tampering, blurriness, or formatting anomalies

### Verification Page Assessment (Document B)

Evaluate the visual and textual content of the verification screenshot:

- Does it appear to be an official academic verification portal?
- Is the design/layout consistent with the institution from Document A?
- Does it contain verifiable content such as:
  - Matching student_name, certificate_id, and degree_or_program
  - Mentions of the institution's name or logo
  - Phrases such as "Verified," "Issued by," "Valid Certificate," etc.
- Does the document seem visually aligned with Document A (branding, tone, structure)?

Output a document_b_confidence_score between 0 and 1 based on the credibility and match with Document A.

### URL Authenticity Check

Examine the {verification_url} :

- Is the degree_or_program name real or just random?

Return:
- "verification_url_valid": true | false

### Final Output Format (JSON)

Return only the following JSON structure with all fields completed. If any field is missing or unreadable, set its value to null.

```json
{{
  "document_a": {{
    "student_name": "John Doe",
    "institution_name": "University of Example",
    "degree_or_program": "Bachelor of Science in Computer Science",
    "date_of_issue": "2023-06-15",
    "certificate_id": "UOE-2023-000123",
    "certificate_title": "Developer Certification",
    "signatures": ["Registrar", "Vice Chancellor"],
    "seals_or_stamps": ["Official University Seal", "Gold embossed emblem"],
    "document_a_confidence_score": 0.92
  }},
  "document_b": {{
    "document_b_confidence_score": 0.87
  }},
  "verification_url_valid": true,
  "total_verification": "pass"
}}
```"""


def verification_page_url(verification_url_pdf: str) -> str:
    """Page URL behind a verification PDF: scheme, host and path without a trailing .pdf."""
    parsed = urlparse(verification_url_pdf)
    if not parsed.scheme or not parsed.netloc:
        return verification_url_pdf
    path = re.sub(r"\.pdf$", "", parsed.path, flags=re.IGNORECASE)
    return f"{parsed.scheme}://{parsed.hostname}{path}"


def build_prompt(verification_url_pdf: str) -> str:
    return PROMPT_TEMPLATE.format(verification_url=verification_page_url(verification_url_pdf))


def _json_candidates(text: str) -> List[str]:
    candidates = []
    for pattern in (_JSON_FENCE_RE, _ANY_FENCE_RE):
        match = pattern.search(text)
        if match:
            candidates.append(match.group(1))
    match = _BRACE_SPAN_RE.search(text)
    if match:
        candidates.append(match.group(0))
    candidates.append(text)
    return candidates


def extract_json_payload(text: str) -> Any:
    """
    Extract the JSON value embedded in a model reply.

    Tries in order:
    1. ```json fenced block
    2. Generic fenced block
    3. First '{' to last '}' span
    4. The whole text
    The first candidate that parses wins.

    Raises:
        AnalysisError: If no candidate parses
    """
    for candidate in _json_candidates(text):
        try:
            return json.loads(candidate)
        except ValueError:
            continue
    raise AnalysisError("Failed to parse analysis response: no JSON object found in reply")


def parse_analysis_result(payload: Any) -> AnalysisResult:
    """Coerce a chat-completions response body into an AnalysisResult."""
    try:
        content = payload["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        raise AnalysisError("Invalid response format from analysis service")

    if isinstance(content, str):
        data = extract_json_payload(content)
    elif isinstance(content, dict):
        data = content
    else:
        raise AnalysisError("Unexpected response format from analysis service")

    if not isinstance(data, dict):
        raise AnalysisError("Failed to parse analysis response: reply JSON is not an object")
    try:
        return AnalysisResult.model_validate(data)
    except ValidationError as e:
        raise AnalysisError(f"Failed to parse analysis response: {e.error_count()} invalid field(s)") from e


class MistralAnalysisClient:
    """Document analysis over the Mistral chat-completions API."""

    def __init__(
        self,
        api_url: str = DEFAULT_API_URL,
        model: str = DEFAULT_MODEL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None
    ):
        self.api_url = api_url
        self.model = model
        self.timeout = timeout
        self._session = session or requests.Session()

    def build_request(self, certificate_url: str, verification_url_pdf: str) -> Dict[str, Any]:
        return {
            "model": self.model,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": build_prompt(verification_url_pdf)},
                        {"type": "document_url", "document_url": certificate_url},
                        {"type": "document_url", "document_url": verification_url_pdf},
                    ],
                }
            ],
            "document_image_limit": DOCUMENT_IMAGE_LIMIT,
            "document_page_limit": DOCUMENT_PAGE_LIMIT,
        }

    def analyze(self, api_key: str, certificate_url: str, verification_url_pdf: str) -> AnalysisResult:
        if not api_key:
            raise AnalysisError("Analysis service API key is not configured")

        try:
            response = self._session.post(
                self.api_url,
                json=self.build_request(certificate_url, verification_url_pdf),
                headers={"Authorization": f"Bearer {api_key}"},
                timeout=self.timeout,
            )
        except requests.Timeout as e:
            logger.error("Analysis service timed out after %.0fs", self.timeout)
            raise AnalysisError(f"Analysis service timed out after {self.timeout:.0f}s") from e
        except requests.RequestException as e:
            logger.error("Analysis service unreachable: %s", e)
            raise AnalysisError("Analysis service unreachable") from e

        if not response.ok:
            try:
                error = response.json()
                reason = error.get("message") if isinstance(error, dict) else None
                reason = reason or json.dumps(error)
            except ValueError:
                reason = response.text[:200]
            logger.error("Analysis service rejected the call: HTTP %d %s", response.status_code, reason)
            raise AnalysisError(
                f"Analysis service error (HTTP {response.status_code}): {reason}",
                status_code=response.status_code,
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise AnalysisError("Analysis service returned a non-JSON body") from e

        result = parse_analysis_result(payload)
        logger.info("Analysis completed: total_verification=%s", result.total_verification)
        return result
