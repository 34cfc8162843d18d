# Copyright (c) 2026 PocketLLM. Licensed under the MIT License. See LICENSE.
"""
Smoke tests for a running PocketLLM OpenAI-compatible API server.

Start the server first:  pocketllm serve <model_dir>
Then run this:           python tests/server_test.py [--base-url URL] [--model-dir ID]

--model-dir must name a model inside ~/.pocketllm/models/ (for example
org/name); the load-model tests are skipped without it.
"""

import argparse
import json
import sys
import threading
import urllib.error
import urllib.request


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def api(base_url: str, method: str, path: str, body=None, timeout: int = 300):
    """Make an API request and return (status_code, parsed_json | None)."""
    url = f"{base_url}{path}"
    data = json.dumps(body).encode() if body else None
    req = urllib.request.Request(url, data=data, method=method)
    if data:
        req.add_header("Content-Type", "application/json")
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            return resp.status, json.loads(resp.read())
    except urllib.error.HTTPError as exc:
        body_bytes = exc.read() if exc.fp else b""
        try:
            return exc.code, json.loads(body_bytes)
        except (json.JSONDecodeError, ValueError):
            return exc.code, {"raw": body_bytes.decode(errors="replace")}


def stream_chunks(base_url: str, path: str, body: dict, timeout: int = 300):
    """Make a streaming request and return the parsed SSE data objects plus
    whether the closing ``data: [DONE]`` sentinel arrived."""
    url = f"{base_url}{path}"
    req = urllib.request.Request(url, data=json.dumps(body).encode(), method="POST")
    req.add_header("Content-Type", "application/json")

    chunks: list[dict] = []
    got_done = False
    with urllib.request.urlopen(req, timeout=timeout) as resp:
        for line in resp:
            line = line.decode().strip()
            if not line.startswith("data: "):
                continue
            payload = line[6:]
            if payload == "[DONE]":
                got_done = True
                break
            chunks.append(json.loads(payload))
    return chunks, got_done


MARKERS = ("<|im_end|>", "<|im_start|>", "<|user|>", "</s>")


def _leaked_marker(text: str) -> str | None:
    for marker in MARKERS:
        if marker in text:
            return marker
    return None


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------

def test_models_endpoint(base_url: str, **_):
    """GET /v1/models lists the loaded model."""
    status, body = api(base_url, "GET", "/v1/models")
    if status != 200:
        return "fail", f"expected 200, got {status}"
    if len(body.get("data", [])) != 1:
        return "fail", f"expected one model, got {body.get('data')}"
    if body["data"][0]["object"] != "model":
        return "fail", "entry is not a model object"


def test_chat_non_streaming(base_url: str, **_):
    """POST /v1/chat/completions returns text without turn markers."""
    payload = {
        "messages": [{"role": "user", "content": "What is 2+2? Answer briefly."}],
        "max_tokens": 64,
    }
    status, body = api(base_url, "POST", "/v1/chat/completions", payload)
    if status != 200:
        return "fail", f"expected 200, got {status}"
    content = body["choices"][0]["message"]["content"]
    if not content:
        return "fail", "empty response content"
    marker = _leaked_marker(content)
    if marker:
        return "fail", f"stop marker {marker!r} leaked into output"
    usage = body.get("usage", {})
    if usage.get("prompt_tokens", 0) <= 0:
        return "fail", "prompt_tokens should be > 0"
    if usage.get("total_tokens") != usage.get("prompt_tokens", 0) + usage.get("completion_tokens", 0):
        return "fail", f"inconsistent usage: {usage}"


def test_chat_streaming(base_url: str, **_):
    """Streaming chat opens with the role, carries content, ends with [DONE]."""
    payload = {
        "messages": [{"role": "user", "content": "Say hello."}],
        "max_tokens": 32,
        "stream": True,
    }
    chunks, got_done = stream_chunks(base_url, "/v1/chat/completions", payload)
    if len(chunks) < 2:
        return "fail", f"expected >=2 chunks, got {len(chunks)}"
    if chunks[0]["choices"][0].get("delta", {}).get("role") != "assistant":
        return "fail", "first chunk missing role=assistant"

    content = "".join(c["choices"][0]["delta"].get("content", "") for c in chunks[1:-1])
    if not content:
        return "fail", "no content in middle chunks"
    marker = _leaked_marker(content)
    if marker:
        return "fail", f"stop marker {marker!r} leaked into stream"
    if chunks[-1]["choices"][0].get("finish_reason") not in ("stop", "length"):
        return "fail", "last chunk missing finish_reason"
    if not got_done:
        return "fail", "stream did not end with data: [DONE]"


def test_completions_non_streaming(base_url: str, **_):
    """POST /v1/completions returns text."""
    payload = {"prompt": "Once upon a time", "max_tokens": 32}
    status, body = api(base_url, "POST", "/v1/completions", payload)
    if status != 200:
        return "fail", f"expected 200, got {status}"
    if not body["choices"][0]["text"]:
        return "fail", "empty completion text"


def test_completions_streaming(base_url: str, **_):
    """Streaming completion yields text chunks and ends with [DONE]."""
    payload = {"prompt": "The sky is", "max_tokens": 32, "stream": True}
    chunks, got_done = stream_chunks(base_url, "/v1/completions", payload)
    if not chunks:
        return "fail", "no chunks received"
    if not got_done:
        return "fail", "stream did not end with data: [DONE]"
    if not any(c["choices"][0].get("text", "") for c in chunks[:-1]):
        return "fail", "no text in streaming completion chunks"


def test_stop_parameter(base_url: str, **_):
    """A request stop string never appears in the output."""
    payload = {"prompt": "1, 2, 3, 4, 5, 6, 7, 8,", "stop": [" 6"], "max_tokens": 48}
    status, body = api(base_url, "POST", "/v1/completions", payload)
    if status != 200:
        return "fail", f"expected 200, got {status}"
    text = body["choices"][0]["text"]
    if " 6" in text:
        return "fail", f"stop string leaked: {text!r}"


def test_greedy_decoding(base_url: str, **_):
    """Two identical requests produce identical output."""
    payload = {
        "messages": [{"role": "user", "content": "What is the capital of France?"}],
        "max_tokens": 32,
    }
    s1, body1 = api(base_url, "POST", "/v1/chat/completions", payload)
    s2, body2 = api(base_url, "POST", "/v1/chat/completions", payload)
    if s1 != 200 or s2 != 200:
        return "fail", f"requests failed: {s1}, {s2}"
    r1 = body1["choices"][0]["message"]["content"]
    r2 = body2["choices"][0]["message"]["content"]
    if r1 != r2:
        return "fail", f"greedy decoding not deterministic:\n  run1: {r1!r}\n  run2: {r2!r}"


def test_max_tokens(base_url: str, **_):
    """max_tokens is respected."""
    payload = {
        "messages": [{"role": "user", "content": "Tell me a long story."}],
        "max_tokens": 5,
    }
    status, body = api(base_url, "POST", "/v1/chat/completions", payload)
    if status != 200:
        return "fail", f"expected 200, got {status}"
    completion_tokens = body.get("usage", {}).get("completion_tokens", 0)
    if completion_tokens > 5:
        return "fail", f"completion_tokens={completion_tokens}, expected <= 5"


def test_invalid_request(base_url: str, **_):
    """max_tokens=0 is rejected before generation starts."""
    payload = {"prompt": "hi", "max_tokens": 0}
    status, _ = api(base_url, "POST", "/v1/completions", payload)
    if status != 422:
        return "fail", f"expected 422, got {status}"


def test_load_model(base_url: str, model_dir: str | None = None, **_):
    """POST /v1/models/load swaps in a model and serves from it."""
    if model_dir is None:
        return "skip", "no --model-dir provided"

    status, body = api(base_url, "POST", "/v1/models/load", {"model_dir": model_dir}, timeout=600)
    if status != 200:
        return "fail", f"expected 200, got {status}: {body}"
    if body["status"] != "success":
        return "fail", f"expected success, got {body}"

    chat_payload = {"messages": [{"role": "user", "content": "Say hi."}], "max_tokens": 16}
    status2, body2 = api(base_url, "POST", "/v1/chat/completions", chat_payload)
    if status2 != 200:
        return "fail", f"post-swap inference failed: {status2}"
    if not body2["choices"][0]["message"]["content"]:
        return "fail", "empty post-swap response"


def test_concurrent_swap_conflict(base_url: str, model_dir: str | None = None, **_):
    """Two concurrent swaps: one may be refused with 409, one must succeed."""
    if model_dir is None:
        return "skip", "no --model-dir provided"

    results: list[dict] = [{}, {}]

    def _swap(idx):
        try:
            s, b = api(base_url, "POST", "/v1/models/load", {"model_dir": model_dir}, timeout=600)
            results[idx]["status"] = s
            results[idx]["body"] = b
        except Exception as exc:
            results[idx]["error"] = str(exc)

    threads = [threading.Thread(target=_swap, args=(i,)) for i in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=600)

    for i, r in enumerate(results):
        if "error" in r:
            return "fail", f"swap {i} raised an exception: {r['error']}"
        if r.get("status") not in (200, 409):
            return "fail", f"swap {i} unexpected status: {r}"
    if not any(r.get("status") == 200 for r in results):
        return "fail", f"no swap succeeded: {results}"


def test_load_invalid_model(base_url: str, **_):
    """Loading a path outside the model store is refused."""
    payload = {"model_dir": "/tmp/nonexistent_model_dir_12345"}
    status, body = api(base_url, "POST", "/v1/models/load", payload)
    if status not in (403, 404):
        return "fail", f"expected 403 or 404 for invalid model, got {status}: {body}"


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------

ALL_TESTS = [
    test_models_endpoint,
    test_chat_non_streaming,
    test_chat_streaming,
    test_completions_non_streaming,
    test_completions_streaming,
    test_stop_parameter,
    test_greedy_decoding,
    test_max_tokens,
    test_invalid_request,
    test_load_model,
    test_concurrent_swap_conflict,
    test_load_invalid_model,
]


def main():
    parser = argparse.ArgumentParser(description="PocketLLM API server smoke tests")
    parser.add_argument(
        "--base-url", default="http://127.0.0.1:8000",
        help="Server base URL (default: http://127.0.0.1:8000)",
    )
    parser.add_argument(
        "--model-dir", default=None,
        help="Model ID in ~/.pocketllm/models/ for the load-model tests",
    )
    args = parser.parse_args()
    base = args.base_url.rstrip("/")

    try:
        api(base, "GET", "/v1/models", timeout=5)
    except Exception:
        print(f"Could not connect to {base}")
        print("Start the server first:  pocketllm serve <model_dir>")
        sys.exit(1)

    passed = 0
    failed = 0
    skipped = 0

    GREEN = "\033[32m"
    RED = "\033[31m"
    YELLOW = "\033[33m"
    RESET = "\033[0m"

    for test_fn in ALL_TESTS:
        name = test_fn.__name__
        try:
            result = test_fn(base_url=base, model_dir=args.model_dir)
            if isinstance(result, tuple):
                status, msg = result
                if status == "fail":
                    failed += 1
                    print(f"  {RED}FAIL{RESET}  {name}: {msg}")
                elif status == "skip":
                    skipped += 1
                    print(f"  {YELLOW}SKIP{RESET}  {name}: {msg}")
            else:
                passed += 1
                print(f"  {GREEN}PASS{RESET}  {name}")
        except Exception as exc:
            failed += 1
            print(f"  {RED}FAIL{RESET}  {name}: {exc}")

    print()
    print(f"Results: {GREEN}{passed} passed{RESET}, "
          f"{RED}{failed} failed{RESET}, "
          f"{YELLOW}{skipped} skipped{RESET}")

    sys.exit(1 if failed else 0)


if __name__ == "__main__":
    main()
