"""
OpenAI client wrapper for generation, OCR and the provider file index.

One LLMClient is constructed per process and passed to every component that
needs it. All calls take an explicit timeout; an SDK timeout surfaces as
StageTimeoutError carrying the caller's label so the pipeline can degrade
instead of failing.

Some model families (gpt-5, reasoning models) reject sampling parameters.
Those are stripped up front, and a 400 "Unsupported parameter: X" response
triggers exactly one retry without X.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Optional

from openai import APITimeoutError, BadRequestError, OpenAI

from .errors import StageTimeoutError

logger = logging.getLogger(__name__)

SAMPLING_PARAMS = ("temperature", "top_p", "presence_penalty", "frequency_penalty")

_NO_SAMPLING_MODEL_RE = re.compile(r"gpt-5|reasoning", re.IGNORECASE)
_UNSUPPORTED_PARAM_RE = re.compile(r"Unsupported parameter:\s*'?(\w+)'?")


@dataclass
class FileSearchHit:
    """A passage returned by the provider's file_search tool."""
    file_id: str
    filename: str
    text: str
    score: float = 0.0
    attributes: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "file_id": self.file_id,
            "filename": self.filename,
            "text": self.text,
            "score": self.score,
            "attributes": self.attributes,
        }


@dataclass
class Generation:
    """Output of one generate() call."""
    text: str
    tool_results: list[FileSearchHit] = field(default_factory=list)


def strip_sampling_params(params: dict) -> dict:
    """Drop sampling parameters the target model does not accept."""
    model = str(params.get("model", ""))
    if not _NO_SAMPLING_MODEL_RE.search(model):
        return dict(params)
    return {k: v for k, v in params.items() if k not in SAMPLING_PARAMS}


def unsupported_param(error: Exception) -> Optional[str]:
    """Name of the parameter a 400 error complains about, if any."""
    match = _UNSUPPORTED_PARAM_RE.search(str(error))
    return match.group(1) if match else None


class LLMClient:
    """
    Thin layer over the OpenAI Responses, Files and Vector Stores APIs.

    Args:
        api_key: OpenAI key; defaults to OPENAI_API_KEY
        model: Default generation model
        client: Pre-built openai.OpenAI instance (tests pass a mock)
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "gpt-5.2-pro",
        client: Any = None,
    ):
        self.model = model
        self._client = client

        if self._client is None:
            key = api_key or os.getenv("OPENAI_API_KEY")
            if not key:
                logger.warning("OPENAI_API_KEY not found. Generation and embeddings will fail.")
                return
            self._client = OpenAI(api_key=key)
            logger.info(f"OpenAI client initialized (default model {model})")

    @property
    def client(self):
        if self._client is None:
            raise RuntimeError("Missing OPENAI_API_KEY")
        return self._client

    # -------------------------------------------------------------------------
    # Generation
    # -------------------------------------------------------------------------

    def generate(
        self,
        instructions: str,
        input: Any,
        max_output_tokens: Optional[int] = None,
        tools: Optional[list] = None,
        tool_choice: Any = None,
        include: Optional[list] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        timeout: float = 45.0,
        label: str = "generation",
    ) -> Generation:
        """
        Run one Responses API call.

        Args:
            instructions: System instructions
            input: Prompt text, or a list of message dicts
            max_output_tokens: Hard cap on output size
            tools: Tool definitions (e.g. file_search bound to a vector store)
            tool_choice: "auto", "required" or a specific tool
            timeout: Seconds before StageTimeoutError(label)
            label: Stage name used in timeout errors and logs

        Returns:
            Generation with output text and any file_search results
        """
        params: dict = {
            "model": model or self.model,
            "instructions": instructions,
            "input": input,
        }
        if max_output_tokens is not None:
            params["max_output_tokens"] = max_output_tokens
        if tools:
            params["tools"] = tools
        if tool_choice is not None:
            params["tool_choice"] = tool_choice
        if include:
            params["include"] = include
        if temperature is not None:
            params["temperature"] = temperature

        response = self._create_response(params, timeout=timeout, label=label)
        return Generation(
            text=getattr(response, "output_text", "") or "",
            tool_results=self._file_search_hits(response),
        )

    def describe_image(
        self,
        image_url: str,
        instruction: str,
        model: Optional[str] = None,
        max_output_tokens: int = 1200,
        timeout: float = 45.0,
    ) -> str:
        """OCR an image by URL (http(s) or data:) with a vision model."""
        params = {
            "model": model or "gpt-4o-mini",
            "input": [
                {
                    "role": "user",
                    "content": [
                        {"type": "input_text", "text": instruction},
                        {"type": "input_image", "image_url": image_url},
                    ],
                }
            ],
            "max_output_tokens": max_output_tokens,
        }
        response = self._create_response(params, timeout=timeout, label="ocr")
        return getattr(response, "output_text", "") or ""

    def _create_response(self, params: dict, timeout: float, label: str):
        params = strip_sampling_params(params)
        api = self.client.with_options(timeout=timeout).responses

        try:
            return api.create(**params)
        except APITimeoutError as e:
            raise StageTimeoutError(label) from e
        except BadRequestError as e:
            param = unsupported_param(e)
            if not param or param not in params:
                raise
            logger.warning(
                f"openai_retry_strip_param: {param}",
                extra={"event": "openai_retry_strip_param", "param": param, "model": params.get("model")},
            )
            retry_params = {k: v for k, v in params.items() if k != param}

        try:
            return api.create(**retry_params)
        except APITimeoutError as e:
            raise StageTimeoutError(label) from e

    @staticmethod
    def _file_search_hits(response) -> list[FileSearchHit]:
        hits = []
        for item in getattr(response, "output", None) or []:
            if getattr(item, "type", None) != "file_search_call":
                continue
            for result in getattr(item, "results", None) or []:
                hits.append(FileSearchHit(
                    file_id=getattr(result, "file_id", "") or "",
                    filename=getattr(result, "filename", "") or "",
                    text=getattr(result, "text", "") or "",
                    score=float(getattr(result, "score", 0.0) or 0.0),
                    attributes=dict(getattr(result, "attributes", None) or {}),
                ))
        return hits

    # -------------------------------------------------------------------------
    # Provider file index
    # -------------------------------------------------------------------------

    def create_vector_store(self, name: str, timeout: float = 45.0) -> str:
        try:
            store = self.client.with_options(timeout=timeout).vector_stores.create(name=name)
        except APITimeoutError as e:
            raise StageTimeoutError("vector_store_create") from e
        logger.info(f"Created vector store {store.id} ({name})")
        return store.id

    def upload_file(self, filename: str, text: str, timeout: float = 45.0) -> str:
        """Upload extracted text as a retrieval file; returns the file id."""
        try:
            uploaded = self.client.with_options(timeout=timeout).files.create(
                file=(filename, text.encode("utf-8"), "text/plain"),
                purpose="assistants",
            )
        except APITimeoutError as e:
            raise StageTimeoutError("openai_file_upload") from e
        return uploaded.id

    def attach_file(self, vector_store_id: str, file_id: str, timeout: float = 45.0) -> None:
        try:
            self.client.with_options(timeout=timeout).vector_stores.files.create(
                vector_store_id=vector_store_id,
                file_id=file_id,
            )
        except APITimeoutError as e:
            raise StageTimeoutError("vector_store_attach") from e
