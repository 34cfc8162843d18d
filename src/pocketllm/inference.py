# Copyright (c) 2026 PocketLLM. Licensed under the MIT License. See LICENSE.
"""Interactive chat against a locally loaded model."""

import os
import subprocess
import tempfile

from prompt_toolkit import prompt as better_input
from prompt_toolkit.key_binding import KeyBindings

from pocketllm.generation import FinishReason, GenerationConfig, generate
from pocketllm.utils import has_chat_template, render_chat_prompt


def _make_key_bindings():
    """Create key bindings for the chat prompt. Ctrl+G opens $EDITOR."""
    kb = KeyBindings()

    @kb.add("c-g")
    def _open_editor(event):
        editor = os.environ.get("VISUAL") or os.environ.get("EDITOR", "vi")
        buf = event.app.current_buffer
        with tempfile.NamedTemporaryFile(suffix=".txt", mode="w+", delete=False) as f:
            f.write(buf.text)
            tmp_path = f.name
        try:
            subprocess.call([editor, tmp_path])
            with open(tmp_path) as f:
                text = f.read()
            buf.text = text
            buf.cursor_position = len(text)
        finally:
            os.unlink(tmp_path)

    return kb


def _print_fragment(fragment: str) -> None:
    print(fragment, end="", flush=True)


def run_chat_loop(context, model_name: str, config: GenerationConfig, stop: str | None = None):
    """Run the interactive chat loop until the user quits."""
    tokenizer = getattr(context, "tokenizer", None)
    add_special_tokens = not has_chat_template(tokenizer)
    messages = []

    kb = _make_key_bindings()
    print(f"Talk to {model_name} (Ctrl+D or 'q' to quit, '/new' for new conversation, Ctrl+G for editor)")
    while True:
        try:
            query = better_input("> ", key_bindings=kb)
        except (EOFError, KeyboardInterrupt):
            query = "q"

        if query.strip() == "q":
            break

        if query.strip() == "/new":
            messages = []
            print("Starting new conversation.")
            continue

        messages.append({"role": "user", "content": query})
        prompt = render_chat_prompt(tokenizer, messages)

        print("Model Response: ", end="", flush=True)
        result = generate(
            context,
            prompt,
            stop,
            _print_fragment,
            config=config,
            add_special_tokens=add_special_tokens,
        )
        print()

        if result.finish_reason is FinishReason.ERROR:
            # Nothing was generated for this turn; let the user retry
            messages.pop()
            continue
        if result.finish_reason is FinishReason.DECODE_FAILED:
            print(f"Context window full ({config.n_ctx} tokens). Starting new conversation.")
            messages = []
            continue

        messages.append({"role": "assistant", "content": result.text})
