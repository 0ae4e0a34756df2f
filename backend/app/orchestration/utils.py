"""
Utility functions for LLM response parsing.
"""
import json
import re
from typing import Any, Dict, Optional


def extract_json_from_llm_response(content: str) -> Optional[Dict[str, Any]]:
    """
    Extract a JSON object from an LLM response, handling common formatting issues.

    Tries, in order: direct parsing, markdown code blocks (```json or ```),
    the first balanced { ... } span, and that span with trailing commas removed.

    Returns None if no JSON object is found; callers decide whether that is
    an error.
    """
    if not content:
        return None

    content = content.strip()

    try:
        result = json.loads(content)
        if isinstance(result, dict):
            return result
    except json.JSONDecodeError:
        pass

    for pattern in (r'```json\s*([\s\S]*?)\s*```', r'```\s*([\s\S]*?)\s*```'):
        match = re.search(pattern, content, re.DOTALL)
        if match:
            try:
                result = json.loads(match.group(1).strip())
                if isinstance(result, dict):
                    return result
            except json.JSONDecodeError:
                pass

    json_str = _balanced_object(content)
    if json_str is None:
        return None

    for candidate in (json_str, _fix_common_json_issues(json_str)):
        try:
            result = json.loads(candidate)
            if isinstance(result, dict):
                return result
        except json.JSONDecodeError:
            continue
    return None


def _balanced_object(content: str) -> Optional[str]:
    """Return the first {...} span with balanced braces, ignoring braces in strings."""
    start = content.find('{')
    if start == -1:
        return None

    depth = 0
    in_string = False
    escape_next = False

    for i in range(start, len(content)):
        char = content[i]

        if escape_next:
            escape_next = False
            continue
        if char == '\\':
            escape_next = True
            continue
        if char == '"':
            in_string = not in_string
            continue

        if not in_string:
            if char == '{':
                depth += 1
            elif char == '}':
                depth -= 1
                if depth == 0:
                    return content[start:i + 1]
    return None


def _fix_common_json_issues(json_str: str) -> str:
    """Remove trailing commas before } or ]."""
    return re.sub(r',\s*([}\]])', r'\1', json_str)
