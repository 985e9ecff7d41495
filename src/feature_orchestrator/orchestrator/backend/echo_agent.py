"""Local demo agent for CLI provider integration tests.

Prints stream-json lines the way a real coding agent CLI does. A prompt that
asks for a plan gets a fixed plan terminated by the plan marker.
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path

DEMO_PLAN = """\
## Plan

```tasks
## Phase 1: Implementation
- [ ] T001: Apply the requested change | File: README.md
```

[SPEC_GENERATED]"""


def main(argv: list[str] | None = None) -> int:
    """Emit deterministic stream-json output for the given prompt."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--prompt")
    parser.add_argument("--prompt-file")
    parser.add_argument("--model", default="echo")
    args = parser.parse_args(argv)

    if args.prompt_file:
        prompt = Path(args.prompt_file).read_text("utf-8")
    else:
        prompt = args.prompt or ""

    failure = os.getenv("FEATURE_ORCHESTRATOR_ECHO_FAIL")
    if failure:
        sys.stderr.write(f"{failure}\n")
        return 1

    if "[SPEC_GENERATED]" in prompt and "## Approved Plan" not in prompt:
        _emit_text(DEMO_PLAN)
        return 0

    first_line = next((line for line in prompt.splitlines() if line.strip()), "")
    _emit_text(f"Working on: {first_line.strip()} (model {args.model})")
    tool_block = {"type": "tool_use", "name": "Read", "input": {"file_path": "README.md"}}
    _emit({"type": "assistant", "message": {"content": [tool_block]}})
    if "[TASK_START]" in prompt:
        _emit_text("[TASK_START] T001")
        _emit_text("[TASK_COMPLETE] T001")
        _emit_text("[PHASE_COMPLETE] Phase 1")
    _emit({"type": "result", "subtype": "success", "result": "Done.", "is_error": False})
    return 0


def _emit_text(text: str) -> None:
    _emit({"type": "assistant", "message": {"content": [{"type": "text", "text": text}]}})


def _emit(payload: dict[str, object]) -> None:
    sys.stdout.write(json.dumps(payload) + "\n")
    sys.stdout.flush()


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
