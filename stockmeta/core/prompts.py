"""Prompt templates for Adobe Stock metadata generation."""

from . import config


def generate_adobe_stock_prompt() -> str:
    """Build the instruction block that enforces JSON output and the stock rules."""
    return f"""You are an expert at creating metadata for stock photography that meets Adobe Stock's strict requirements.

Analyze the provided image and generate professional, SEO-optimized metadata that will help the image sell well on Adobe Stock.

REQUIREMENTS:
1. Title: Must be {config.TITLE_MIN_LENGTH}-{config.TITLE_MAX_LENGTH} characters. Be descriptive, specific, and include key visual elements. Use title case. No generic terms like "image" or "photo".

2. Description: Must be {config.DESCRIPTION_MIN_LENGTH}-{config.DESCRIPTION_MAX_LENGTH} characters. Write a compelling, detailed description that:
   - Describes what's in the image clearly
   - Mentions colors, composition, mood, and style
   - Includes context about potential use cases
   - Uses natural, engaging language
   - Avoids repetition of the title

3. Keywords: Provide {config.KEYWORDS_MIN_COUNT}-{config.KEYWORDS_MAX_COUNT} relevant keywords. Include:
   - Main subject(s) and objects
   - Colors and visual style
   - Mood and atmosphere
   - Composition and perspective
   - Potential use cases or themes
   - Related concepts and synonyms

OUTPUT FORMAT:
Respond with ONLY valid JSON in this exact format (no markdown, no code blocks, no additional text):
{{
  "title": "Your title here",
  "description": "Your description here",
  "keywords": ["keyword1", "keyword2", "keyword3"]
}}

IMPORTANT:
- Return ONLY the JSON object
- Keywords must be an array of strings
- All text must be in English
- Be accurate to what is actually in the image"""


def generate_user_prompt(mime_type: str = "image/jpeg") -> str:
    return f"Analyze this {mime_type} image and generate Adobe Stock metadata following the requirements above."


def build_instruction(mime_type: str) -> str:
    """Full text part sent alongside the image."""
    return f"{generate_adobe_stock_prompt()}\n\n{generate_user_prompt(mime_type)}"
