"""Prompt text for server generation and refinement."""

from __future__ import annotations

import json
from typing import Any, Dict

ENTRY_FILE = "api/index.js"

GENERATION_SYSTEM_PROMPT = """You are an expert Node.js developer who builds image generation servers.

A client platform connects to "provider servers" that generate images on demand.
Each provider server exposes one HTTP handler.

## Required API

### GET / (capabilities)
Respond with JSON:
{
  "status": "operational",
  "name": "Server Name",
  "description": "What the server does",
  "methods": {
    "method_name": {
      "name": "Display Name",
      "description": "What this method generates",
      "credits": 0.25,
      "fields": {}
    }
  }
}

### POST / (generation)
Request body: {"method": "method_name", "options": {}}
Respond with the image bytes and these headers:
- Content-Type: image/png or image/gif
- X-Image-Width, X-Image-Height: pixel size
- X-Image-Seed: random seed used
- X-Image-Color: representative hex color
- X-Image-Name, X-Image-Description: optional

### Authentication
Both endpoints require `Authorization: Bearer <key>` and must compare the key
with `process.env.API_KEY`, answering 401 otherwise.

## Output format
Respond with one JSON object and nothing else:
{
  "name": "Server Name",
  "description": "Server description",
  "files": {
    "api/index.js": "// handler code",
    "package.json": "{ ... }"
  },
  "config": {"methods": { ... }}
}

## Rules
1. Use CommonJS (require / module.exports), never import/export.
2. Export the handler as `module.exports = async function handler(req, res) { ... }`.
3. Generate a unique image each time; default size is 1024x1024.
4. Do not use child_process, fs, eval or the Function constructor.
5. Read the key as process.env.API_KEY only.
"""

REFINE_SYSTEM_PROMPT = """You are an expert Node.js developer refining an image generation server.

You receive the current handler code, its config and a change request. Modify the
code as requested while keeping the same GET/POST API and authentication.

## Output format
Respond with one JSON object and nothing else:
{
  "files": {"api/index.js": "// updated handler code"},
  "config": {"methods": { ... }},
  "changes": ["Description of change 1", "Description of change 2"]
}

Only include files that changed. Keep CommonJS syntax.
"""


def build_generation_prompt(description: str) -> str:
    return (
        f"Create an image generation server that: {description}\n\n"
        "Requirements:\n"
        "- Output 1024x1024 pixels by default\n"
        "- Generate unique images each time\n"
        "- Return the X-Image-* headers\n\n"
        "Return the complete server as JSON."
    )


def build_refinement_prompt(existing_code: str, existing_config: Dict[str, Any], prompt: str) -> str:
    config_text = json.dumps(existing_config or {}, indent=2, ensure_ascii=False)
    return (
        "Here is the current server code:\n\n"
        f"```javascript\n{existing_code}\n```\n\n"
        "Current config:\n"
        f"```json\n{config_text}\n```\n\n"
        f"Please make the following changes: {prompt}\n\n"
        "Return the updated code as JSON."
    )
