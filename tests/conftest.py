import json
from typing import Callable, Dict, List, Union

import httpx
import pytest

from core.openai_client import ClientConfig, RemoteCallClient

Reply = Union[str, httpx.Response]


def completion(content: str) -> httpx.Response:
    """A chat-completions success body as the provider returns it."""
    return httpx.Response(
        200,
        json={
            "id": "cmpl-test",
            "object": "chat.completion",
            "created": 0,
            "model": "test-model",
            "choices": [
                {
                    "index": 0,
                    "message": {"role": "assistant", "content": content},
                    "finish_reason": "stop",
                }
            ],
            "usage": {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15},
        },
    )


def error_response(status: int, message: str = "provider error") -> httpx.Response:
    return httpx.Response(status, json={"error": {"message": message, "code": status}})


class FakeProvider:
    """Scripted chat-completions endpoint mounted behind httpx.MockTransport.

    ``script`` receives the decoded request body and returns reply text, an
    httpx.Response, or raises an httpx transport error.
    """

    def __init__(self) -> None:
        self.requests: List[Dict] = []
        self.headers: List[httpx.Headers] = []
        self.script: Callable[[Dict], Reply] = lambda body: "Summary: ok\n\nDetails: ok"

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append(body)
        self.headers.append(request.headers)
        reply = self.script(body)
        if isinstance(reply, httpx.Response):
            return reply
        return completion(reply)

    def calls_mentioning(self, text: str) -> int:
        return sum(1 for body in self.requests if text in user_prompt(body))


def user_prompt(body: Dict) -> str:
    return "\n".join(m["content"] for m in body["messages"] if m["role"] == "user")


async def no_sleep(_seconds: float) -> None:
    return None


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def make_client(provider: FakeProvider) -> Callable[..., RemoteCallClient]:
    """Build a RemoteCallClient whose HTTP traffic goes to the fake provider."""

    def _make(sleep=no_sleep, **overrides) -> RemoteCallClient:
        settings = {"api_key": "test-key", "base_url": "https://provider.test/api/v1"}
        settings.update(overrides)
        http_client = httpx.AsyncClient(transport=httpx.MockTransport(provider))
        return RemoteCallClient(ClientConfig(**settings), http_client=http_client, sleep=sleep)

    return _make
