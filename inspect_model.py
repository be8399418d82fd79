from __future__ import annotations

import argparse
import logging

from dotenv import load_dotenv

from portrait_matte.session import InferenceContext, available_providers
from portrait_matte.sources import resolve_model_sources


def _print_phase(phase: str, detail: str | None = None) -> None:
    print(f"  [{phase}] {detail or ''}".rstrip())


def main() -> int:
    load_dotenv()

    parser = argparse.ArgumentParser(description="Load a matting model and print its provider and IO signature.")
    parser.add_argument(
        "--model",
        action="append",
        default=None,
        help="Model URL or path (repeatable or comma-separated). Defaults to RMBG_MODEL_URLS / RMBG_MODEL_URL.",
    )
    parser.add_argument("--cpu-only", action="store_true", help="Restrict to the CPU provider.")
    args = parser.parse_args()

    logging.basicConfig(level=logging.WARNING)

    sources = resolve_model_sources(args.model)
    print(f"available providers: {', '.join(available_providers())}")

    ctx = InferenceContext(emit=_print_phase)
    if args.cpu_only:
        ctx.force_portable("cli")
    handle = ctx.ensure_loaded(sources)

    print(f"active provider: {handle.active_provider}")
    for i in handle.session.get_inputs():
        print(f"input  {i.name}: {i.type} {list(i.shape)}")
    for o in handle.session.get_outputs():
        print(f"output {o.name}: {o.type} {list(o.shape)}")
    size = handle.input_size()
    print(f"letterbox target: {size if size else 'dynamic'}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
