"""
Amazon Bedrock model client.
Streams plain text from Anthropic models on Bedrock for the engine's text protocol.
"""

import asyncio
import functools
import json
import logging
import queue
import threading
from typing import Any, AsyncIterator, Dict, Generator, List, Optional, Tuple

import boto3
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    EndpointConnectionError,
    NoCredentialsError,
    PartialCredentialsError,
    ReadTimeoutError,
)

from config import aws_config, model_config, get_model_config, get_provider
from engine.errors import ModelError, TransientModelError, classify_model_error

logger = logging.getLogger(__name__)

_TRANSIENT_CODES = {
    "ThrottlingException", "TooManyRequestsException", "ServiceUnavailableException",
    "ModelTimeoutException", "ModelNotReadyException", "InternalServerException",
    "ExpiredTokenException", "UnrecognizedClientException", "InvalidSignatureException",
    "AccessDeniedException", "ServiceQuotaExceededException",
}

_SENTINEL = object()


def to_model_error(exc: BaseException) -> ModelError:
    """Map boto/botocore failures onto the engine's error taxonomy."""
    if isinstance(exc, ClientError):
        code = exc.response.get("Error", {}).get("Code", "Unknown")
        message = exc.response.get("Error", {}).get("Message", str(exc))
        if code in _TRANSIENT_CODES:
            return TransientModelError(f"Bedrock {code}: {message}")
        return ModelError(f"Bedrock API error ({code}): {message}")
    if isinstance(exc, (NoCredentialsError, PartialCredentialsError)):
        return TransientModelError("AWS credentials not configured", retry_hint="Configure credentials and retry.")
    if isinstance(exc, (EndpointConnectionError, ReadTimeoutError)):
        return TransientModelError(f"Bedrock connection failed: {exc}")
    return classify_model_error(exc)


def format_messages(messages: List[Dict[str, str]]) -> Tuple[str, List[Dict[str, Any]]]:
    """Split out system text and merge consecutive same-role turns (the API requires alternation)."""
    system_parts: List[str] = []
    formatted: List[Dict[str, Any]] = []
    for m in messages:
        role, content = m.get("role"), m.get("content") or ""
        if role == "system":
            if content.strip():
                system_parts.append(content)
            continue
        if formatted and formatted[-1]["role"] == role:
            formatted[-1]["content"] += "\n\n" + content
        else:
            formatted.append({"role": role, "content": content})
    if formatted and formatted[0]["role"] != "user":
        formatted.insert(0, {"role": "user", "content": "(earlier conversation omitted)"})
    for m in formatted:
        if not m["content"].strip():
            m["content"] = "(empty)"
    return "\n\n".join(system_parts), formatted


class BedrockModelClient:
    """Model client over the bedrock-runtime API: stream() and chat()."""

    def __init__(self, model_id: Optional[str] = None, region: Optional[str] = None,
                 max_tokens: Optional[int] = None, temperature: Optional[float] = None,
                 client: Any = None):
        self.model_id = model_id or model_config.model_id
        self.region = region or aws_config.region
        self.max_tokens = max_tokens or min(model_config.max_tokens,
                                            get_model_config(self.model_id).get("max_output_tokens", 4096))
        self.temperature = model_config.temperature if temperature is None else temperature
        self.client = client or self._create_client()
        logger.info(f"BedrockModelClient initialized with model: {self.model_id}")

    @property
    def provider(self) -> str:
        return get_provider(self.model_id)

    def _create_client(self) -> Any:
        """Create and configure the Bedrock runtime client"""
        session_kwargs = {"region_name": self.region}
        if aws_config.has_profile():
            session_kwargs["profile_name"] = aws_config.profile_name
        elif aws_config.has_explicit_credentials():
            session_kwargs["aws_access_key_id"] = aws_config.access_key_id
            session_kwargs["aws_secret_access_key"] = aws_config.secret_access_key
            if aws_config.has_session_token():
                session_kwargs["aws_session_token"] = aws_config.session_token
        try:
            session = boto3.Session(**session_kwargs)
            return session.client("bedrock-runtime")
        except (BotoCoreError, ClientError) as e:
            raise to_model_error(e) from e

    def _request_body(self, messages: List[Dict[str, str]]) -> Dict[str, Any]:
        system, formatted = format_messages(messages)
        body: Dict[str, Any] = {
            "anthropic_version": "bedrock-2023-05-31",
            "max_tokens": self.max_tokens,
            "messages": formatted,
        }
        if system:
            body["system"] = system
        if self.temperature is not None:
            body["temperature"] = self.temperature
        return body

    # ------------------------------------------------------------------
    # sync API (runs on worker threads)
    # ------------------------------------------------------------------

    def stream_sync(self, messages: List[Dict[str, str]],
                    stop: Optional[threading.Event] = None) -> Generator[str, None, None]:
        try:
            logger.info(f"Streaming from model: {self.model_id}")
            response = self.client.invoke_model_with_response_stream(
                modelId=self.model_id,
                body=json.dumps(self._request_body(messages)),
                contentType="application/json",
                accept="application/json",
            )
            for event in response["body"]:
                if stop is not None and stop.is_set():
                    logger.info("Stream stopped by caller")
                    return
                if "chunk" not in event:
                    continue
                chunk = json.loads(event["chunk"]["bytes"])
                if chunk.get("type") == "content_block_delta":
                    delta = chunk.get("delta", {})
                    if delta.get("type") == "text_delta" and delta.get("text"):
                        yield delta["text"]
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Bedrock streaming error: {e}")
            raise to_model_error(e) from e

    def chat_sync(self, messages: List[Dict[str, str]]) -> str:
        try:
            logger.info(f"Invoking model: {self.model_id}")
            response = self.client.invoke_model(
                modelId=self.model_id,
                body=json.dumps(self._request_body(messages)),
                contentType="application/json",
                accept="application/json",
            )
            body = json.loads(response["body"].read())
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Bedrock API error: {e}")
            raise to_model_error(e) from e
        return "".join(b.get("text", "") for b in body.get("content", []) if b.get("type") == "text")

    # ------------------------------------------------------------------
    # async API used by the engine
    # ------------------------------------------------------------------

    async def stream(self, messages: List[Dict[str, str]],
                     cancel_event: Optional[asyncio.Event] = None) -> AsyncIterator[str]:
        """Yield text chunks. The sync boto3 stream runs on a producer thread."""
        chunk_queue: queue.Queue = queue.Queue()
        stop = threading.Event()

        def _stream_producer():
            """Run the sync generator in a background thread, forwarding chunks to the queue."""
            try:
                for c in self.stream_sync(messages, stop=stop):
                    chunk_queue.put(c)
                chunk_queue.put(_SENTINEL)
            except Exception as exc:
                chunk_queue.put(exc)

        producer_thread = threading.Thread(target=_stream_producer, daemon=True)
        producer_thread.start()

        loop = asyncio.get_running_loop()
        get = functools.partial(chunk_queue.get, True, 0.25)
        try:
            while True:
                if cancel_event is not None and cancel_event.is_set():
                    break
                try:
                    chunk = await loop.run_in_executor(None, get)
                except queue.Empty:
                    continue
                if chunk is _SENTINEL:
                    break
                if isinstance(chunk, Exception):
                    raise chunk
                yield chunk
        finally:
            stop.set()

    async def chat(self, messages: List[Dict[str, str]]) -> str:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self.chat_sync, messages)
