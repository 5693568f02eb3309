"""
Text processing utilities for LLM responses and prompt templates.
"""
import json
import re
from typing import Any, Dict, Optional


def fill_template(template: str, **values: str) -> str:
    """
    Substitute `{{name}}` placeholders in a prompt template.

    Unknown placeholders are left untouched.

    Args:
        template: Template text
        **values: Placeholder values

    Returns:
        Filled template
    """
    for name, value in values.items():
        template = template.replace('{{' + name + '}}', value if value is not None else '')
    return template


def strip_code_fences(text: str) -> str:
    """
    Remove a surrounding ```json ... ``` (or plain ```) fence.

    Args:
        text: Raw model output

    Returns:
        Text without the fence
    """
    text = text.strip()
    match = re.search(r'```(?:json)?\s*([\s\S]*?)\s*```', text)
    if match:
        return match.group(1).strip()
    return text


def extract_json(content: str) -> Any:
    """
    Extract JSON from an LLM response.

    Handles:
    - Plain JSON
    - JSON wrapped in markdown code blocks
    - JSON with extra text before/after

    Args:
        content: Raw response content

    Returns:
        Parsed JSON value

    Raises:
        json.JSONDecodeError: If no valid JSON found
    """
    candidates = [content.strip(), strip_code_fences(content)]

    obj_match = re.search(r'\{.*\}', content, re.DOTALL)
    if obj_match:
        candidates.append(obj_match.group(0))

    arr_match = re.search(r'\[.*\]', content, re.DOTALL)
    if arr_match:
        candidates.append(arr_match.group(0))

    for candidate in candidates:
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue

    raise json.JSONDecodeError(
        f"Could not extract valid JSON from content: {content[:200]}...",
        content,
        0
    )


def coerce_difficulty(value: Any) -> Optional[int]:
    """Convert a model-reported difficulty to an int in 1..5, or None."""
    try:
        difficulty = int(value)
    except (TypeError, ValueError):
        return None
    return max(1, min(5, difficulty))


def normalize_concepts(value: Any) -> list:
    """Return a list of non-empty concept strings."""
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if str(item).strip()]


def parse_explanation_payload(content: str) -> Dict[str, Any]:
    """
    Parse an explanation answer.

    Structured answers carry 'explanation', 'coreConcepts' and 'difficulty';
    anything that is not a JSON object is taken as the explanation markdown.

    Args:
        content: Raw model output

    Returns:
        Dict with keys markdown, core_concepts, difficulty
    """
    try:
        data = extract_json(content)
    except json.JSONDecodeError:
        data = None

    if isinstance(data, list) and data and isinstance(data[0], dict):
        data = data[0]

    if isinstance(data, dict) and 'explanation' in data:
        return {
            'markdown': str(data.get('explanation') or '').strip(),
            'core_concepts': normalize_concepts(data.get('coreConcepts')),
            'difficulty': coerce_difficulty(data.get('difficulty')),
        }

    return {
        'markdown': content.strip(),
        'core_concepts': [],
        'difficulty': None,
    }
