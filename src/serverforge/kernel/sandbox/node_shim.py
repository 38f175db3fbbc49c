"""Node.js runner shim executed next to the generated handler.

The shim loads ``handler.js`` from its own directory, hands it a minimal
request/response pair, records every write to the response and prints exactly
one result line, then exits as soon as that line is flushed::

    __SANDBOX_RESULT__{"statusCode":200,"headers":{...},"body":"<base64>"}

The body is always base64 encoded, so the line can never contain a second
marker or a raw newline. ``__REQUEST_SOURCE__`` is replaced by a JavaScript
expression that evaluates to the request object.
"""

from __future__ import annotations

import json
from typing import Any, Dict

HANDLER_FILENAME = "handler.js"
RUNNER_FILENAME = "runner.js"
REQUEST_FILENAME = "request.json"

_REQUEST_PLACEHOLDER = "__REQUEST_SOURCE__"

NODE_SHIM_TEMPLATE = r"""'use strict';
const path = require('path');

const MARKER = '__SANDBOX_RESULT__';
const requestData = __REQUEST_SOURCE__;

let emitted = false;
const chunks = [];

function toBuffer(chunk) {
  if (Buffer.isBuffer(chunk)) return chunk;
  if (chunk instanceof Uint8Array) return Buffer.from(chunk);
  return Buffer.from(String(chunk));
}

function emit(statusCode, headers) {
  if (emitted) return;
  emitted = true;
  const body = Buffer.concat(chunks.map(toBuffer)).toString('base64');
  const code = Number.isInteger(statusCode) ? statusCode : parseInt(statusCode, 10) || 200;
  // Leading newline: the handler may have left a partial stdout line.
  const line = '\n' + MARKER + JSON.stringify({ statusCode: code, headers, body }) + '\n';
  // Open timers or sockets must not hold the process past its response.
  process.stdout.write(line, () => process.exit(0));
}

const res = {
  statusCode: 200,
  _headers: {},
  setHeader(name, value) {
    this._headers[String(name).toLowerCase()] = String(value);
    return this;
  },
  getHeader(name) {
    return this._headers[String(name).toLowerCase()];
  },
  write(chunk) {
    if (chunk !== undefined && chunk !== null) chunks.push(chunk);
    return true;
  },
  end(data) {
    if (data !== undefined && data !== null) chunks.push(data);
    emit(this.statusCode, this._headers);
    return this;
  },
  status(code) {
    this.statusCode = code;
    return this;
  },
  json(data) {
    this.setHeader('content-type', 'application/json');
    return this.end(JSON.stringify(data));
  },
  send(data) {
    if (data !== null && typeof data === 'object' && !Buffer.isBuffer(data) && !(data instanceof Uint8Array)) {
      return this.json(data);
    }
    return this.end(data);
  },
};

const req = {
  method: requestData.method,
  headers: requestData.headers || {},
  body: requestData.body,
};

(async () => {
  try {
    const loaded = require(path.join(__dirname, 'handler.js'));
    const handler = (loaded && loaded.default) || loaded;
    await handler(req, res);
  } catch (error) {
    if (!emitted) {
      res.statusCode = 500;
      res.json({ error: error && error.message ? error.message : String(error) });
    }
  }
})();
"""


def serialize_request(request: Dict[str, Any]) -> str:
    return json.dumps(request, ensure_ascii=False, separators=(",", ":"))


def render_inline_runner(request: Dict[str, Any]) -> str:
    """Runner with the request embedded as a JSON string literal."""
    literal = json.dumps(serialize_request(request))
    return NODE_SHIM_TEMPLATE.replace(_REQUEST_PLACEHOLDER, f"JSON.parse({literal})")


def render_file_runner() -> str:
    """Runner that reads ``request.json`` from its own directory."""
    source = (
        "JSON.parse(require('fs').readFileSync("
        f"path.join(__dirname, '{REQUEST_FILENAME}'), 'utf8'))"
    )
    return NODE_SHIM_TEMPLATE.replace(_REQUEST_PLACEHOLDER, source)
