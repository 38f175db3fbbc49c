"""Code Generation Client - turns a description into handler source.

One provider call per generate/refine, no retries. The provider answer must
contain a JSON object with a ``files`` map; the entry file ``api/index.js``
becomes the version's code.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import structlog

from serverforge.config import settings
from serverforge.domain.errors import GenerationParseError
from serverforge.infrastructure.path_guard import InvalidPathError, validate_bundle_path
from serverforge.kernel.llm.llm_runtime import LLMConfig, LLMRuntime, get_llm_runtime
from serverforge.services.generation_prompts import (
    ENTRY_FILE,
    GENERATION_SYSTEM_PROMPT,
    REFINE_SYSTEM_PROMPT,
    build_generation_prompt,
    build_refinement_prompt,
)

logger = structlog.get_logger()

DEFAULT_SERVER_NAME = "AI Generated Server"


def _default_config() -> Dict[str, Any]:
    return {"methods": {}}


@dataclass
class GeneratedServer:
    code: str
    config: Dict[str, Any] = field(default_factory=_default_config)
    files: Dict[str, str] = field(default_factory=dict)
    suggested_name: str = DEFAULT_SERVER_NAME
    suggested_description: str = ""


@dataclass
class RefinedServer:
    code: str
    config: Dict[str, Any] = field(default_factory=_default_config)
    files: Dict[str, str] = field(default_factory=dict)
    changes: List[str] = field(default_factory=list)


def extract_json_object(text: str) -> str:
    """Return the first balanced ``{...}`` span of ``text``.

    Braces inside JSON string literals (including escaped quotes) do not count.
    """
    start = text.find("{")
    if start < 0:
        raise GenerationParseError("No JSON object found in provider response")

    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start:index + 1]
    raise GenerationParseError("Unbalanced JSON object in provider response")


def parse_provider_payload(text: str) -> Dict[str, Any]:
    span = extract_json_object(str(text or ""))
    try:
        payload = json.loads(span)
    except json.JSONDecodeError as e:
        raise GenerationParseError(f"Provider response is not valid JSON: {e}") from e

    files = payload.get("files")
    if not isinstance(files, dict):
        raise GenerationParseError("Provider response missing files object")
    if not all(isinstance(k, str) and isinstance(v, str) for k, v in files.items()):
        raise GenerationParseError("Provider files must map paths to source strings")
    try:
        payload["files"] = {validate_bundle_path(path): source for path, source in files.items()}
    except InvalidPathError as e:
        raise GenerationParseError(f"Provider returned an unsafe file path: {e}") from e

    config = payload.get("config")
    if config is not None and not isinstance(config, dict):
        raise GenerationParseError("Provider config must be an object")
    return payload


class CodeGenerationService:
    """Generates and refines handler code through the LLM runtime."""

    def __init__(self, runtime: Optional[LLMRuntime] = None, provider_id: Optional[str] = None):
        self._runtime = runtime
        self.provider_id = provider_id

    @property
    def runtime(self) -> LLMRuntime:
        if self._runtime is None:
            self._runtime = get_llm_runtime()
        return self._runtime

    def _llm_config(self) -> LLMConfig:
        return LLMConfig(
            provider_id=self.provider_id,
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_tokens,
        )

    async def _call(self, system_prompt: str, user_prompt: str) -> str:
        response = await self.runtime.chat(
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            config=self._llm_config(),
        )
        return response.content

    async def generate(self, description: str) -> GeneratedServer:
        text = await self._call(GENERATION_SYSTEM_PROMPT, build_generation_prompt(description))
        payload = parse_provider_payload(text)
        files = payload["files"]

        code = files.get(ENTRY_FILE)
        if not code:
            raise GenerationParseError(f"Provider response missing {ENTRY_FILE}")

        server = GeneratedServer(
            code=code,
            config=payload.get("config") or _default_config(),
            files=dict(files),
            suggested_name=str(payload.get("name") or DEFAULT_SERVER_NAME),
            suggested_description=str(payload.get("description") or ""),
        )
        logger.info("server_generated", files=sorted(files), name=server.suggested_name)
        return server

    async def refine(
        self,
        existing_code: str,
        existing_config: Optional[Dict[str, Any]],
        prompt: str,
    ) -> RefinedServer:
        text = await self._call(
            REFINE_SYSTEM_PROMPT,
            build_refinement_prompt(existing_code, existing_config or {}, prompt),
        )
        payload = parse_provider_payload(text)
        files = payload["files"]

        # Refinements only return changed files.
        code = files.get(ENTRY_FILE) or existing_code
        changes = payload.get("changes") or []
        if not isinstance(changes, list):
            changes = [str(changes)]

        server = RefinedServer(
            code=code,
            config=payload.get("config") or _default_config(),
            files=dict(files),
            changes=[str(change) for change in changes],
        )
        logger.info("server_refined", files=sorted(files), changes=len(server.changes))
        return server
