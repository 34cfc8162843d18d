# Copyright (c) 2026 PocketLLM. Licensed under the MIT License. See LICENSE.
"""Unified CLI entry point for PocketLLM."""

import argparse
import logging
import os
import sys


def _resolve(args):
    """Resolve model_dir if it looks like a HuggingFace model ID."""
    from pocketllm.model_store import resolve_model_dir

    args.model_dir = resolve_model_dir(args.model_dir)


def _load(args):
    """Build the generation config and load the model context."""
    from pocketllm.context import TransformersContext
    from pocketllm.utils import load_generation_config

    config = load_generation_config(
        args.model_dir,
        n_ctx=args.ctx_size,
        n_threads=args.threads or None,
        max_new_tokens=getattr(args, "max_tokens", None),
    )
    context = TransformersContext.load(
        args.model_dir,
        n_ctx=config.n_ctx,
        n_threads=config.n_threads,
        trust_remote_code=args.trust_remote_code,
    )
    return context, config


def _cmd_chat(args):
    """Run interactive chat."""
    try:
        _resolve(args)
        context, config = _load(args)

        from pocketllm.inference import run_chat_loop

        with context:
            model_name = os.path.basename(os.path.normpath(args.model_dir))
            run_chat_loop(context, model_name, config, stop=args.stop)
    except (RuntimeError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


def _cmd_complete(args):
    """Stream a single completion to stdout."""
    try:
        _resolve(args)
        context, config = _load(args)

        from pocketllm.generation import FinishReason, generate

        with context:
            result = generate(
                context,
                args.prompt,
                args.stop,
                lambda fragment: print(fragment, end="", flush=True),
                config=config,
            )
        print()
        if result.finish_reason is FinishReason.ERROR:
            sys.exit(1)
    except (RuntimeError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


def _cmd_serve(args):
    """Start the API server."""
    try:
        _resolve(args)
        os.environ["TOKENIZERS_PARALLELISM"] = "false"

        from pocketllm import LLM, Server
        from pocketllm.utils import load_generation_config

        config = load_generation_config(
            args.model_dir, n_ctx=args.ctx_size, n_threads=args.threads or None
        )
        llm = LLM(
            args.model_dir,
            num_threads=args.threads or 0,
            config=config,
            trust_remote_code=args.trust_remote_code,
        )
        Server(llm).run(host=args.host, port=args.port, log_level=args.log_level)
    except (RuntimeError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


def _add_model_args(p):
    p.add_argument("model_dir", help="Path to model directory or HuggingFace model ID")
    p.add_argument("--threads", type=int, default=0, help="Number of threads (0 = default)")
    p.add_argument("--ctx-size", type=int, default=None, help="Context window size in tokens")
    p.add_argument("--trust-remote-code", action="store_true", help="Allow loading custom tokenizer code from model directory")


def main():
    os.environ.setdefault("TRANSFORMERS_NO_ADVISORY_WARNINGS", "1")
    parser = argparse.ArgumentParser(
        prog="pocketllm",
        description="PocketLLM: greedy local text generation with streaming stop sequences",
    )
    parser.add_argument("--log-level", default="warning", help="Logging level (debug|info|warning|error)")
    sub = parser.add_subparsers(dest="command")

    # --- chat ---
    p_chat = sub.add_parser("chat", help="Interactive chat with a model")
    _add_model_args(p_chat)
    p_chat.add_argument("--stop", default=None, help="Extra stop sequence")
    p_chat.set_defaults(func=_cmd_chat)

    # --- complete ---
    p_complete = sub.add_parser("complete", help="Complete a single prompt")
    _add_model_args(p_complete)
    p_complete.add_argument("prompt", help="Prompt text")
    p_complete.add_argument("--stop", default=None, help="Extra stop sequence")
    p_complete.add_argument("--max-tokens", type=int, default=None, help="Maximum tokens to generate")
    p_complete.set_defaults(func=_cmd_complete)

    # --- serve ---
    p_serve = sub.add_parser("serve", help="Start OpenAI-compatible API server")
    _add_model_args(p_serve)
    p_serve.add_argument("--host", default="127.0.0.1", help="Host to bind to")
    p_serve.add_argument("--port", type=int, default=8000, help="Port to bind to")
    p_serve.set_defaults(func=_cmd_serve)

    args = parser.parse_args()
    if not args.command:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(level=args.log_level.upper(), format="%(levelname)s %(name)s: %(message)s")
    args.func(args)


if __name__ == "__main__":
    main()
