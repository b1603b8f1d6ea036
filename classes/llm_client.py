from typing import Any, Dict, List, Optional

from openai import OpenAI
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage


class EmptyCompletionError(Exception):
    pass


class BaseLlmClient:
    """
    Token usage accounting shared by the chat client.
    """

    last_usage: Optional[Dict[str, int]]

    def _merge_usage(self, resp: Any) -> None:
        if resp is None:
            return
        usage = getattr(resp, "usage", None)
        if usage is None:
            return
        inc = {
            "prompt_tokens": getattr(usage, "prompt_tokens", 0) or 0,
            "completion_tokens": getattr(usage, "completion_tokens", 0) or 0,
            "total_tokens": getattr(usage, "total_tokens", 0) or 0,
        }
        if self.last_usage is None:
            self.last_usage = inc
            return
        for k, v in inc.items():
            self.last_usage[k] = (self.last_usage.get(k, 0) or 0) + (v or 0)

    def get_accrued_usage(self) -> Dict[str, int]:
        return dict(self.last_usage or {})


class ChatLlmClient(BaseLlmClient):
    """
    Minimal wrapper for chat-style JSON use:

        text = chat_llm.invoke_json([SystemMessage(...), HumanMessage(...)])

    Under the hood: OpenAI Chat Completions with response_format=json_object.
    One HTTP call per invocation; the OpenAI client's own retries are disabled.
    """

    def __init__(
        self,
        model_name: str,
        *,
        api_key: str,
        timeout: float | None = None,
        client: Any = None,
    ):
        self.model_name = model_name
        self._timeout = timeout
        self.last_usage: Optional[Dict[str, int]] = None

        if client is not None:
            self._client = client
        else:
            client_kwargs: Dict[str, Any] = {"api_key": api_key, "max_retries": 0}
            if timeout is not None:
                client_kwargs["timeout"] = timeout
            self._client = OpenAI(**client_kwargs)

    def _to_openai_messages(self, messages: List[BaseMessage]) -> List[Dict[str, str]]:
        out: List[Dict[str, str]] = []
        for m in messages:
            if isinstance(m, SystemMessage):
                role = "system"
            elif isinstance(m, HumanMessage):
                role = "user"
            elif isinstance(m, AIMessage):
                role = "assistant"
            else:
                role = "user"
            out.append({"role": role, "content": str(m.content)})
        return out

    def invoke_json(
        self,
        messages: List[BaseMessage],
        *,
        temperature: float = 0.1,
        max_tokens: int = 4000,
    ) -> str:
        """
        Single HTTP call without retries/backoff. Returns the raw message content.
        Usage is reset per call.
        """
        self.last_usage = None
        resp = self._client.chat.completions.create(
            model=self.model_name,
            messages=self._to_openai_messages(messages),
            temperature=temperature,
            max_tokens=max_tokens,
            response_format={"type": "json_object"},
        )
        self._merge_usage(resp)

        choices = getattr(resp, "choices", None) or []
        if not choices:
            raise EmptyCompletionError("No response from OpenAI")
        content = getattr(choices[0].message, "content", None)
        if not content:
            raise EmptyCompletionError("No response from OpenAI")
        return content.strip()
