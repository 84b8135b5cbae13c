import json
import logging
import re

from google import genai
from google.genai import types

from ..models.analysis import AnalysisData, parse_analysis
from ..utils.errors import MalformedResponseError, UpstreamError

logger = logging.getLogger(__name__)

SYSTEM_INSTRUCTION = (
    "You are an expert analyst that identifies and structures impacts from text content. "
    "You provide balanced analysis with both positive and negative impacts when present."
)

ANALYSIS_PROMPT = """Analyze the following article content and provide a structured analysis of its impacts.
For each impact, identify:
1. The entity or group being impacted
2. The specific impact description
3. A score from -1 (very negative) to 1 (very positive)
4. A confidence score from 0 to 1
5. Supporting evidence from the text

Article content:
{content}

Provide the analysis in the following JSON format:
{{
  "article_title": "A concise title summarizing the main topic",
  "article_url": "",
  "impacting_entity": "The main actor or event causing the impacts",
  "impacts": [
    {{
      "impacted_entity": "The entity or group being impacted",
      "impact": "A clear description of how they are impacted",
      "score": -1 to 1,
      "confidence": 0 to 1,
      "source": "system",
      "supporting_evidence": [
        {{
          "description": "A specific quote or evidence from the text",
          "source_url": "",
          "source": "system"
        }}
      ]
    }}
  ]
}}

Ensure each impact has at least one piece of supporting evidence from the text.
Leave source_url empty unless the article itself cites the link."""

_FENCE_RE = re.compile(r"^\s*```[a-zA-Z]*\s*\n?(.*?)\n?\s*```\s*$", re.DOTALL)


def strip_code_fence(text: str) -> str:
    """Remove a markdown code fence wrapped around the whole response."""
    match = _FENCE_RE.match(text)
    return match.group(1).strip() if match else text.strip()


def build_client(api_key):
    return genai.Client(api_key=api_key)


class GeminiImpactExtractor:
    def __init__(self, client, model_name='gemini-2.0-flash-001', temperature=0.7, max_output_tokens=2000):
        if client is None:
            raise ValueError("Gemini client cannot be None")
        self.client = client
        self.model_name = model_name
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens

    def extract(self, content: str) -> AnalysisData:
        """Ask the model for the impacts described in ``content`` and validate the answer."""
        logger.info(f"Starting Gemini impact extraction with {self.model_name}...")
        try:
            response = self.client.models.generate_content(
                model=self.model_name,
                contents=ANALYSIS_PROMPT.format(content=content),
                config=types.GenerateContentConfig(
                    system_instruction=SYSTEM_INSTRUCTION,
                    response_mime_type="application/json",
                    temperature=self.temperature,
                    max_output_tokens=self.max_output_tokens,
                ),
            )
        except Exception as e:
            logger.error(f"Gemini request failed: {e}", exc_info=True)
            raise UpstreamError(details=str(e)) from e

        analysis = self.parse_response(getattr(response, "text", None))
        logger.info(
            f"Analysis completed successfully: title={analysis.article_title!r}, "
            f"impacts={len(analysis.impacts)}"
        )
        return analysis

    @staticmethod
    def parse_response(text) -> AnalysisData:
        if not text or not text.strip():
            raise MalformedResponseError(details="Empty response from Gemini")
        try:
            payload = json.loads(strip_code_fence(text))
        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse Gemini response: {e}")
            raise MalformedResponseError(details=f"Invalid JSON response: {e}") from e
        return parse_analysis(payload)
