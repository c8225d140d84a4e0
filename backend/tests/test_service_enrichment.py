import httpx
import pytest
from unittest.mock import MagicMock, patch

from app.errors import EnrichmentError
from app.services.enrichment import EnrichmentClient, fallback_answer, fallback_summary
from app.utils.retry import RetryPolicy

BASE_URL = "https://gemini.test/v1beta"


def _response(status_code: int, payload=None) -> httpx.Response:
    request = httpx.Request("POST", f"{BASE_URL}/models/x")
    if payload is None:
        return httpx.Response(status_code, text="error", request=request)
    return httpx.Response(status_code, json=payload, request=request)


def _client(**kwargs) -> EnrichmentClient:
    kwargs.setdefault("api_key", "AIza-test")
    return EnrichmentClient(
        model="gemini-test",
        embedding_model="embedding-test",
        base_url=BASE_URL,
        timeout=5,
        policy=RetryPolicy(max_attempts=3, base_delay=1),
        sleep=MagicMock(),
        **kwargs,
    )


def test_fallback_summary_is_deterministic():
    text = "Hello there. This is a video! Is it short?"

    assert fallback_summary(text) == fallback_summary(text)
    assert "9 words in 3 sentences" in fallback_summary(text)
    assert "unavailable" in fallback_summary("")


def test_fallback_answer_greeting_and_missing_transcript():
    assert fallback_answer("", "Hi!").startswith("Hello!")
    assert "not available" in fallback_answer("", "What is this about?")
    assert "available" in fallback_answer("x " * 40, "What is this about?")


@patch("httpx.Client.post")
def test_summarize_success_truncates_input(mock_post):
    mock_post.return_value = _response(
        200, {"candidates": [{"content": {"parts": [{"text": "  A short summary.  "}]}}]}
    )
    client = _client()

    with patch("app.services.enrichment.settings.SUMMARY_MAX_INPUT_CHARS", 20):
        summary = client.summarize("word " * 100, "english")

    assert summary == "A short summary."
    url = mock_post.call_args.args[0]
    prompt = mock_post.call_args.kwargs["json"]["contents"][0]["parts"][0]["text"]
    assert url == f"{BASE_URL}/models/gemini-test:generateContent"
    assert ("word " * 100)[:20] in prompt
    assert ("word " * 100)[:25] not in prompt
    assert mock_post.call_args.kwargs["headers"] == {"x-goog-api-key": "AIza-test"}


@patch("httpx.Client.post")
def test_summarize_falls_back_after_transient_failures(mock_post):
    mock_post.return_value = _response(503)
    client = _client()

    summary = client.summarize("One sentence here. Another one.", "english")

    assert summary == fallback_summary("One sentence here. Another one.")
    assert mock_post.call_count == 3


@patch("httpx.Client.post", side_effect=httpx.ReadTimeout("slow"))
def test_summarize_timeout_is_a_backend_failure(mock_post):
    client = _client()

    assert client.summarize("Some text.", "english") == fallback_summary("Some text.")


def test_summarize_without_api_key_uses_fallback():
    client = _client(api_key="")

    assert client.summarize("Some text.", "english") == fallback_summary("Some text.")


@patch("httpx.Client.post")
def test_embed_returns_vector(mock_post):
    mock_post.return_value = _response(200, {"embedding": {"values": [0.1, 0.2, 3]}})
    client = _client()

    assert client.embed("hello") == [0.1, 0.2, 3.0]
    payload = mock_post.call_args.kwargs["json"]
    assert payload["model"] == "models/embedding-test"
    assert mock_post.call_args.args[0] == f"{BASE_URL}/models/embedding-test:embedContent"


@pytest.mark.parametrize("payload", [{}, {"embedding": {"values": []}}, {"embedding": {"values": ["a"]}}])
@patch("httpx.Client.post")
def test_embed_rejects_malformed_vectors(mock_post, payload):
    mock_post.return_value = _response(200, payload)

    with pytest.raises(EnrichmentError):
        _client().embed("hello")


@patch("httpx.Client.post")
def test_embed_raises_on_client_error_without_retry(mock_post):
    mock_post.return_value = _response(400)

    with pytest.raises(EnrichmentError):
        _client().embed("hello")

    assert mock_post.call_count == 1


@patch("httpx.Client.post")
def test_answer_question_uses_transcript(mock_post):
    mock_post.return_value = _response(200, {"candidates": [{"content": {"parts": [{"text": "It is about cats."}]}}]})

    answer = _client().answer_question("[00:00] cats are great", "What is it about?", "english")

    assert answer == "It is about cats."
    prompt = mock_post.call_args.kwargs["json"]["contents"][0]["parts"][0]["text"]
    assert "cats are great" in prompt
    assert "What is it about?" in prompt


@patch("httpx.Client.post", side_effect=httpx.ConnectError("down"))
def test_answer_question_falls_back(mock_post):
    assert _client().answer_question("", "hello") == fallback_answer("", "hello")
