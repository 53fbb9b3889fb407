"""Prompt construction and response parsing for page analysis."""

import json
import re

from pydantic import ValidationError

from pagelens.analysis.models import ExtractedText, LLMAnalysisResponse

FENCED_JSON = re.compile(r"```(?:json)?\s*\n([\s\S]*?)\n```")


class AnalysisParseError(ValueError):
    """The model's answer was not the expected JSON object."""


def build_analysis_prompt(
    url: str,
    extracted_text: ExtractedText,
    example_categories: list[str],
    text_limit: int = 4000,
) -> str:
    truncated_text = extracted_text.full_text[:text_limit]
    meta = (
        f"Meta Description: {extracted_text.meta_description}"
        if extracted_text.meta_description
        else "na"
    )

    return f"""You are analyzing a webpage to extract structured information.

=== EXTRACTED TEXT ===
{truncated_text}

=== PAGE METADATA ===
URL: {url}
Title: {extracted_text.title}
Metadata: {meta}

=== SCREENSHOT ===
[Attached as multimodal image]

=== YOUR TASK ===
Analyze this webpage and provide structured information in JSON format.

1. PAGE DESCRIPTION: Write a 2-3 sentence description of what this page is about
2. SCREENSHOT DESCRIPTION: Describe what is visible in the screenshot (layout, key elements, visual design)
3. LANGUAGES: Detect all languages present on the page (ISO 639-1 codes like "en", "sv", "es")
4. CATEGORIZATION:
   - CATEGORY: High-level category (see examples below)
   - SUBCATEGORY: More specific type or section
   - BRAND: Company, organization, or website name

=== CATEGORY GUIDELINES ===
Choose the BEST FITTING category from existing categories, OR create a new one if needed.
Categories should be broad and reusable (e.g., "banking", "news", "e-commerce", "social-media").
Aim for generality to keep categories under 1000 total.

Example categories:
{", ".join(example_categories)}

If no category fits, create a new descriptive one.

=== OUTPUT FORMAT ===
Return ONLY valid JSON, no additional text:

{{
  "pageDescription": "A 2-3 sentence summary of the page content and purpose",
  "screenshotDescription": "Description of what's visible: layout, main elements, colors, branding",
  "languages": ["en", "sv"],
  "primaryLanguage": "en",
  "category": "banking",
  "subcategory": "mortgage",
  "brand": "Swedbank"
}}

Now analyze the webpage and return JSON:"""


RETRY_PROMPT = """Your previous response could not be parsed as valid JSON.

Please return ONLY the JSON object with no additional text, markdown formatting, or explanations.

The JSON must match this exact structure:
{
  "pageDescription": "string",
  "screenshotDescription": "string",
  "languages": ["string"],
  "primaryLanguage": "string",
  "category": "string",
  "subcategory": "string",
  "brand": "string"
}

Try again:"""


def _validate(payload: str) -> LLMAnalysisResponse:
    data = json.loads(payload)
    if not isinstance(data, dict):
        raise AnalysisParseError("Response JSON is not an object")
    return LLMAnalysisResponse.model_validate(data, strict=True)


def parse_analysis_response(text: str) -> LLMAnalysisResponse:
    """Parse the model's answer, accepting a bare object or a fenced ```json block.

    Raises:
        AnalysisParseError: If no valid analysis object can be extracted
    """
    try:
        return _validate(text.strip())
    except (json.JSONDecodeError, ValidationError, AnalysisParseError) as direct_error:
        match = FENCED_JSON.search(text)
        if not match:
            raise AnalysisParseError(f"Invalid analysis JSON: {direct_error}") from direct_error
        try:
            return _validate(match.group(1))
        except (json.JSONDecodeError, ValidationError) as fenced_error:
            raise AnalysisParseError(f"Invalid analysis JSON: {fenced_error}") from fenced_error
