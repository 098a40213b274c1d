from __future__ import annotations
import re

# Per-tensor / loader chatter the backend prints while loading a model.
NOISE_PATTERNS: tuple[re.Pattern[str], ...] = tuple(
    re.compile(p)
    for p in (
        r"^print_info:",
        r"^llama_model_load_from_file_impl:",
        r"^llama_model_loader:",
        r"^init_tokenizer:",
        r"^load:",
        r"^load_tensors:",
        r"^llama_context:",
        r"^llama_kv_cache",
        r"^set_abort_callback:",
        r"^attach_threadpool:",
        r"^ggml_",
        r"^Namespace\(",
        r"^==========$",
        r"^Loading Chat Completions Adapter:",
        r"^Chat Completions Adapter Loaded$",
        r"^Chat completion heuristic:",
        r"^Embedded .* loaded\.$",
    )
)

_WELCOME_RE = re.compile(r"^Welcome to KoboldCpp - Version")


def is_noise(line: str) -> bool:
    stripped = line.strip()
    return any(p.search(stripped) for p in NOISE_PATTERNS)


def filter_line(line: str, debug: bool = False) -> str | None:
    """
    Return the line to show to the user, or None when it should be dropped.
    With `debug` set every line passes through untouched.
    """
    if debug:
        return line
    if is_noise(line):
        return None
    return _WELCOME_RE.sub("Version", line)
