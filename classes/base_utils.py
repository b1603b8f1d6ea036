# classes/base_utils.py


import json
import math
import re
from typing import Any, Optional

from classes.google_helpers import OPENAI_MODEL, OPENAI_TIMEOUT, get_secret, logger
from classes.llm_client import ChatLlmClient


class BaseUtils():
    llm_timeout: float = OPENAI_TIMEOUT

    # -----------------------
    # General Utils
    # -----------------------

    def clean_triple_backticks(self, code) -> str:
        pattern = r'```[a-zA-Z]*\n?|```\n?'
        return re.sub(pattern, '', code)

    def _coerce_field_to_str(self, value) -> str:
        if value is None:
            return ""
        if isinstance(value, str):
            return value.strip()
        try:
            return json.dumps(value)
        except TypeError:
            return str(value).strip()

    def _coerce_confidence(self, value: Any) -> Optional[float]:
        """
        Confidence scores come back from the model as ints, floats or numeric strings.
        Anything else, NaN and infinities included, is treated as missing.
        Finite values are clamped to 0-100.
        """
        if isinstance(value, bool):
            return None
        if isinstance(value, str):
            value = value.strip().rstrip("%")
        elif not isinstance(value, (int, float)):
            return None
        try:
            number = float(value)
        except (ValueError, OverflowError):
            return None
        if not math.isfinite(number):
            return None
        return min(max(number, 0.0), 100.0)

    def unsafe_string_format(self, dest_string, print_unused_keys_report=True, **kwargs):
        """
        Formats a destination string by replacing placeholders with corresponding values from kwargs.

        it works differently from the standard "format" method as instead of looking for all the potential keys,
        looks only for the keys as passed in kwargs: literal JSON braces in prompts are left alone.
        """
        missing_keys = []

        def replacer(match):
            key = match.group(1)
            if key in kwargs:
                return str(kwargs[key])
            else:
                missing_keys.append(key)
                return match.group(0)  # Leave the placeholder unchanged

        pattern = re.compile(r'\{(\w+)\}')
        result = pattern.sub(replacer, dest_string)
        if missing_keys and print_unused_keys_report:
            logger.debug(f"Missing keys within string-to-format in unsafe_string_format: {', '.join(missing_keys)}")
        return result

    # -----------------------
    # LLM base plumbing
    # -----------------------

    def _build_chat_llm(self, model_name: str | None = None, timeout: float | None = None) -> ChatLlmClient | None:
        """
        Build a per-request chat client for the given model name.
        Returns None when no OpenAI API key is configured.
        """
        api_key = get_secret("OPENAI_API_KEY")
        if not api_key:
            return None
        if not timeout:
            timeout = self.llm_timeout
        return ChatLlmClient(
            model_name=model_name or OPENAI_MODEL,
            api_key=api_key,
            timeout=timeout,
        )
