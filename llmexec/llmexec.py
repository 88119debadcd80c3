#!/usr/bin/env python3

import argparse
import json
import os
import subprocess
import sys
import time
from pathlib import Path

import requests


DEFAULT_MODEL = "claude-haiku-4-5-20251001"
DEFAULT_MAX_TOKENS = 1024
DEFAULT_HISTORY_LINES = 100
DEFAULT_PROGRAM_NAME = "llm-exec"
DEFAULT_SHELL = "/bin/sh"
CONFIG_FILE = ".config/llm-exec/config.json"
API_URL = "https://api.anthropic.com/v1/messages"
API_VERSION = "2023-06-01"
API_KEY_ENV = "ANTHROPIC_API_KEY"
HISTORY_FILES = (".zsh_history", ".bash_history", ".history")
HISTORY_INTRO = "The user's recent shell history:"
ERROR_SIGIL_PREFIX = 'echo "Error: '
ERROR_SIGIL_SUFFIX = '"'
DEFAULT_SYSTEM_PROMPT = """You are a command-line assistant that outputs ONLY shell commands.

RULES:
1. Output ONLY a single shell command - nothing else
2. NO explanations, NO markdown, NO code blocks, NO backticks, NO formatting
3. If you cannot help, output: echo "Error: <reason>"
4. Never suggest running "{}" - the user is already running that to talk to you

Your entire response must be a valid shell command that can be executed directly."""

CONFIG_DEFAULTS = {
    "model": DEFAULT_MODEL,
    "max_tokens": DEFAULT_MAX_TOKENS,
    "history_lines": DEFAULT_HISTORY_LINES,
    "system_prompt": DEFAULT_SYSTEM_PROMPT,
    "system_prompt_suffix": None,
}
CONFIG_STRING_FIELDS = ("model", "system_prompt", "system_prompt_suffix")


class ApiError(ValueError):
    pass


class MissingApiKeyError(ValueError):
    pass


def use_color(stream, env=None):
    env = os.environ if env is None else env
    return stream.isatty() and env.get("NO_COLOR") is None


def color(text, code, stream=None):
    if not use_color(stream or sys.stdout):
        return text
    return f"\033[{code}m{text}\033[0m"


def warn(message):
    print(f"Warning: {message}", file=sys.stderr)


# -------- Configuration --------


def config_path(home=None, env=None):
    env = os.environ if env is None else env
    override = env.get("LLM_EXEC_CONFIG", "").strip()
    if override:
        return Path(os.path.expanduser(override))
    home = Path.home() if home is None else Path(home)
    return home / CONFIG_FILE


def validate_config_values(data):
    if not isinstance(data, dict):
        raise ValueError("top-level value must be a JSON object")
    values = {}
    for key in CONFIG_DEFAULTS:
        value = data.get(key)
        if value is None:
            continue
        if key in CONFIG_STRING_FIELDS:
            if not isinstance(value, str):
                raise ValueError(f"'{key}' must be a string")
        elif isinstance(value, bool) or not isinstance(value, int):
            raise ValueError(f"'{key}' must be an integer")
        elif key == "max_tokens" and value <= 0:
            raise ValueError("'max_tokens' must be positive")
        elif key == "history_lines" and value < 0:
            raise ValueError("'history_lines' must not be negative")
        values[key] = value
    return values


def load_config_file(path):
    if not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as handle:
            content = handle.read()
    except OSError as exc:
        warn(f"Could not read config file: {exc}")
        return {}
    try:
        return validate_config_values(json.loads(content))
    except ValueError as exc:
        warn(f"Could not parse config file: {exc}")
        return {}


def resolve_config(file_values=None, cli_values=None):
    file_values = file_values or {}
    cli_values = cli_values or {}
    config = {}
    for key, default in CONFIG_DEFAULTS.items():
        if cli_values.get(key) is not None:
            config[key] = cli_values[key]
        elif file_values.get(key) is not None:
            config[key] = file_values[key]
        else:
            config[key] = default
    return config


# -------- Shell history --------


def history_candidates(home=None):
    home = Path.home() if home is None else Path(home)
    return [home / name for name in HISTORY_FILES]


def find_history_file(home=None, exists=os.path.isfile):
    for candidate in history_candidates(home):
        if exists(candidate):
            return candidate
    raise FileNotFoundError("Could not find shell history file")


def clean_history_line(line):
    # zsh extended history: ": 1697003895:0;command"
    if line.startswith(": ") and ";" in line:
        return line.split(";", 1)[1]
    return line


def read_history_tail(path, lines):
    if lines <= 0:
        return ""
    with open(path, "r", encoding="utf-8", errors="replace", newline="") as handle:
        content = handle.read()
    entries = content.split("\n")
    if entries[-1] == "":
        entries.pop()
    tail = [line[:-1] if line.endswith("\r") else line for line in entries[-lines:]]
    return "\n".join(clean_history_line(line) for line in tail)


def get_shell_history(lines, home=None, exists=os.path.isfile):
    path = find_history_file(home, exists)
    return read_history_tail(path, lines)


def format_history_entry(path, command, now=None):
    if "zsh_history" in Path(path).name:
        timestamp = int(time.time() if now is None else now)
        return f": {timestamp}:0;{command}\n"
    return f"{command}\n"


def append_to_history(command, home=None, exists=os.path.isfile, now=None):
    path = find_history_file(home, exists)
    with open(path, "a", encoding="utf-8") as handle:
        handle.write(format_history_entry(path, command, now))
    return path


# -------- Prompt --------


def program_name(argv0=None):
    argv0 = sys.argv[0] if argv0 is None else argv0
    return os.path.basename(argv0 or "") or DEFAULT_PROGRAM_NAME


def build_system_prompt(config, history, name):
    base = config["system_prompt"].replace("{}", name)
    system = f"{base}\n\n{HISTORY_INTRO}\n{history}"
    if config["system_prompt_suffix"] is not None:
        system = f"{system}\n\n{config['system_prompt_suffix']}"
    return system


def build_prompt(config, history, name, request):
    return {"system": build_system_prompt(config, history, name), "user": request}


# -------- Model API --------


def build_headers(api_key):
    return {
        "x-api-key": api_key,
        "anthropic-version": API_VERSION,
        "content-type": "application/json",
    }


def build_request_payload(config, prompt):
    return {
        "model": config["model"],
        "max_tokens": config["max_tokens"],
        "system": prompt["system"],
        "messages": [{"role": "user", "content": prompt["user"]}],
    }


def extract_reply_text(data):
    content = data.get("content") if isinstance(data, dict) else None
    if not isinstance(content, list) or not content:
        raise ApiError("No response from model.")
    first = content[0]
    text = first.get("text") if isinstance(first, dict) else None
    if not isinstance(text, str):
        raise ApiError("No response from model.")
    return text


def call_model(config, prompt, env=None):
    env = os.environ if env is None else env
    api_key = env.get(API_KEY_ENV, "")
    if not api_key:
        raise MissingApiKeyError(f"{API_KEY_ENV} environment variable not set")

    response = requests.post(
        API_URL,
        headers=build_headers(api_key),
        json=build_request_payload(config, prompt),
    )
    if not 200 <= response.status_code < 300:
        raise ApiError(f"API error ({response.status_code}): {response.text}")
    try:
        data = response.json()
    except ValueError as exc:
        raise ApiError(f"Could not parse API response: {exc}") from exc
    return extract_reply_text(data)


def interpret_reply(reply):
    reply = reply.strip()
    if (
        reply.startswith(ERROR_SIGIL_PREFIX)
        and reply.endswith(ERROR_SIGIL_SUFFIX)
        and len(reply) >= len(ERROR_SIGIL_PREFIX) + len(ERROR_SIGIL_SUFFIX)
    ):
        return "error", reply[len(ERROR_SIGIL_PREFIX):-len(ERROR_SIGIL_SUFFIX)]
    return "command", reply


# -------- Execution --------


def prompt_yes_no(question):
    try:
        answer = input(f"{question} [y/N]: ")
    except (EOFError, KeyboardInterrupt):
        print()
        return False
    return answer.strip().lower() in {"y", "yes"}


def resolve_shell(env=None):
    env = os.environ if env is None else env
    return env.get("SHELL") or DEFAULT_SHELL


def exit_status(returncode):
    if returncode < 0:
        return 128 - returncode
    return returncode


def execute_command(command, env=None):
    completed = subprocess.run([resolve_shell(env), "-i", "-c", command], check=False)
    return exit_status(completed.returncode)


# -------- CLI --------


def non_negative_int(value):
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid integer: {value!r}")
    if number < 0:
        raise argparse.ArgumentTypeError("must be >= 0")
    return number


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        prog=DEFAULT_PROGRAM_NAME,
        description="Execute terminal commands based on LLM instructions",
    )
    parser.add_argument(
        "prompt",
        nargs="*",
        help="The prompt describing what command you want to run",
    )
    parser.add_argument(
        "-n",
        "--history-lines",
        type=non_negative_int,
        default=None,
        help=f"Number of history lines to include (default: {DEFAULT_HISTORY_LINES})",
    )
    parser.add_argument(
        "-y",
        "--yes",
        action="store_true",
        help="Skip confirmation and execute immediately",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be sent to the API without making a request",
    )
    return parser.parse_args(argv)


def read_request(args):
    if args.prompt:
        return " ".join(args.prompt)
    print("What do you want to do? ", end="", file=sys.stderr, flush=True)
    line = sys.stdin.readline()
    return line.strip()


def show_dry_run(config, prompt):
    print(f"{color('Model:', '1;36')} {config['model']}")
    print()
    print(color("System prompt:", "1;36"))
    print(prompt["system"])
    print()
    print(f"{color('User prompt:', '1;36')} {prompt['user']}")


def run(args, home=None, env=None):
    env = os.environ if env is None else env
    request = read_request(args)
    if not request:
        print("Error: No prompt provided", file=sys.stderr)
        return 1

    file_values = load_config_file(config_path(home, env))
    config = resolve_config(file_values, {"history_lines": args.history_lines})

    try:
        history = get_shell_history(config["history_lines"], home)
    except (OSError, UnicodeError) as exc:
        warn(f"Could not read shell history: {exc}")
        history = ""

    prompt = build_prompt(config, history, program_name(), request)
    if args.dry_run:
        show_dry_run(config, prompt)
        return 0

    print("Thinking...", end="", file=sys.stderr, flush=True)
    try:
        reply = call_model(config, prompt, env)
    finally:
        print("\r           \r", end="", file=sys.stderr, flush=True)

    kind, text = interpret_reply(reply)
    if kind == "error":
        print(f"{color('Error:', '1;31', sys.stderr)} {text}", file=sys.stderr)
        return 1

    print(color("Suggested command:", "1;36"))
    print(color(f"  {text}", "1;33"))
    print()

    if not args.yes and not prompt_yes_no("Execute this command?"):
        print("Cancelled.")
        return 0

    try:
        append_to_history(text, home)
    except (OSError, UnicodeError) as exc:
        warn(f"Could not add to history: {exc}")
    if not args.yes:
        print()

    try:
        return execute_command(text, env)
    except OSError as exc:
        print(f"Could not start shell: {exc}", file=sys.stderr)
        return 1


def main(argv=None):
    args = parse_args(argv)
    try:
        status = run(args)
    except requests.RequestException as exc:
        print(f"Request error: {exc}", file=sys.stderr)
        sys.exit(1)
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        sys.exit(130)
    sys.exit(status)


if __name__ == "__main__":
    main()
