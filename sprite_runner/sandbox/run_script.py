"""
Run-script generation for sprite execution.

The generated bash program runs unattended inside a sprite and is the only
thing that talks back to us while the agent works. It:
- Runs the setup phase (installs OpenCode by default)
- Clones the repository with the GitHub token embedded in the clone URL
- Checks out the task branch (existing remote branch, or a new one)
- Runs `opencode run --format json` and streams its events to a file
- Sends a signed `progress` callback every interval while the agent is alive
- Sends exactly one terminal callback (`completed` or `error`) on exit

Every callback body is signed with HMAC-SHA256 using the per-session webhook
secret and delivered with an `X-Webhook-Signature: sha256=<hex>` header.
"""

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from urllib.parse import quote, urlsplit, urlunsplit

SIGNATURE_HEADER = "X-Webhook-Signature"
SIGNATURE_PREFIX = "sha256="

REPO_DIR = "/home/sprite/repo"
EVENTS_FILE = "/tmp/opencode-events.jsonl"
STDERR_FILE = "/tmp/opencode-stderr.log"

DEFAULT_SETUP_SCRIPT = """
export PATH="$HOME/.local/bin:$HOME/bin:$HOME/.opencode/bin:/usr/local/bin:$PATH"

echo "Checking for opencode..."
if ! command -v opencode &> /dev/null; then
    echo "Installing opencode..."
    curl -fsSL https://opencode.ai/install | bash

    [ -f "$HOME/.bashrc" ] && source "$HOME/.bashrc"
    export PATH="$HOME/.local/bin:$HOME/bin:$HOME/.opencode/bin:$PATH"
fi

if ! command -v opencode &> /dev/null; then
    echo "ERROR: opencode not found after installation"
    echo "PATH: $PATH"
    ls -la "$HOME/.local/bin/" 2>/dev/null || echo "~/.local/bin not found"
    ls -la "$HOME/.opencode/bin/" 2>/dev/null || echo "~/.opencode/bin not found"
    exit 1
fi

echo "opencode ready"
opencode --version || true
"""


@dataclass(frozen=True)
class RunScriptConfig:
    """Everything the run-script needs; values are escaped during generation."""

    session_id: str
    task_id: str
    webhook_url: str
    webhook_secret: str
    prompt: str
    repo_url: str
    github_token: str
    branch_name: str
    setup_script: str = DEFAULT_SETUP_SCRIPT
    git_user_name: str = "Sprite Runner"
    git_user_email: str = "runner@sprites.dev"
    progress_interval_seconds: int = 30
    repo_dir: str = REPO_DIR
    events_file: str = EVENTS_FILE
    stderr_file: str = STDERR_FILE


def escape_double_quoted(value: str) -> str:
    """
    Escape a value for interpolation inside a bash double-quoted string.

    Backslash is escaped first so the escapes added for `"`, `$` and backtick
    are not themselves doubled.
    """
    return (
        value.replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("$", "\\$")
        .replace("`", "\\`")
    )


def authenticated_repo_url(repo_url: str, token: str) -> str:
    """
    Embed a token into an HTTPS clone URL.

    https://github.com/owner/repo -> https://x-access-token:<token>@github.com/owner/repo

    Any credentials already present in the URL are replaced. Non-HTTP(S) URLs
    (e.g. SSH remotes) are returned unchanged.
    """
    parts = urlsplit(repo_url)
    if parts.scheme not in ("http", "https") or not parts.hostname:
        return repo_url

    host = parts.hostname
    if parts.port:
        host = f"{host}:{parts.port}"
    netloc = f"x-access-token:{quote(token, safe='')}@{host}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


def sign_payload(body: bytes | str, secret: str) -> str:
    """Return the `sha256=<hex>` signature for a raw callback body."""
    if isinstance(body, str):
        body = body.encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def generate_webhook_secret() -> str:
    """32 random bytes, hex encoded."""
    return secrets.token_hex(32)


def build_agent_prompt(prompt: str, branch_name: str) -> str:
    """Append the commit instruction the sandboxed agent must follow."""
    return (
        f"{prompt}\n\n"
        f"ALWAYS COMMIT YOUR WORK TO BRANCH {branch_name} AND PUSH WHEN YOU ARE DONE."
    )


def generate_run_script(config: RunScriptConfig) -> str:
    """Render the complete run-script for one execution session."""
    variables = {
        "WEBHOOK_URL": config.webhook_url,
        "WEBHOOK_SECRET": config.webhook_secret,
        "SESSION_ID": config.session_id,
        "TASK_ID": config.task_id,
        "BRANCH_NAME": config.branch_name,
        "REPO_URL": authenticated_repo_url(config.repo_url, config.github_token),
        "REPO_DIR": config.repo_dir,
        "GIT_USER_NAME": config.git_user_name,
        "GIT_USER_EMAIL": config.git_user_email,
        "EVENTS_FILE": config.events_file,
        "STDERR_FILE": config.stderr_file,
        "PROMPT": build_agent_prompt(config.prompt, config.branch_name),
    }
    assignments = "\n".join(
        f'{name}="{escape_double_quoted(value)}"' for name, value in variables.items()
    )
    interval = max(1, int(config.progress_interval_seconds))

    return "\n".join(
        [
            "#!/bin/bash",
            "set -uo pipefail",
            "",
            assignments,
            f"PROGRESS_INTERVAL={interval}",
            "",
            _FUNCTIONS,
            'echo "=== Sprite Execution ==="',
            'echo "Session: $SESSION_ID"',
            'echo "Task: $TASK_ID"',
            "",
            'PHASE="setup"',
            'echo "=== Setup Phase ==="',
            config.setup_script.strip("\n"),
            'echo "=== Setup Complete ==="',
            "",
            _BODY,
        ]
    )


# Shell helpers. Only bash variables are referenced here, so the block is
# emitted verbatim with no Python-side formatting.
_FUNCTIONS = r"""
TERMINAL_SENT=0
PHASE="init"

json_escape() {
    local s="$1"
    s=${s//\\/\\\\}
    s=${s//\"/\\\"}
    s=${s//$'\n'/\\n}
    s=${s//$'\r'/\\r}
    s=${s//$'\t'/\\t}
    printf '%s' "$s" | tr -d '\000-\010\013\014\016-\037'
}

SESSION_ID_JSON=$(json_escape "$SESSION_ID")
TASK_ID_JSON=$(json_escape "$TASK_ID")

send_webhook() {
    local payload="$1"
    local signature
    signature="sha256=$(printf '%s' "$payload" | openssl dgst -sha256 -hmac "$WEBHOOK_SECRET" | awk '{print $NF}')"

    local http_code
    http_code=$(curl -sS -o /tmp/webhook-response.txt -w "%{http_code}" --max-time 30 \
        -X POST "$WEBHOOK_URL" \
        -H "Content-Type: application/json" \
        -H "X-Webhook-Signature: $signature" \
        --data-binary "$payload")
    local curl_exit=$?

    if [ "$curl_exit" -eq 0 ] && [ "${http_code:0:1}" = "2" ]; then
        return 0
    fi
    echo "WARNING: webhook delivery failed (curl exit: $curl_exit, HTTP: $http_code)"
    return 1
}

send_terminal() {
    local payload="$1"
    TERMINAL_SENT=1
    local attempt
    for attempt in 1 2 3; do
        if send_webhook "$payload"; then
            echo "Terminal webhook delivered"
            return 0
        fi
        sleep $((attempt * 5))
    done
    echo "ERROR: terminal webhook could not be delivered"
    return 1
}

error_payload() {
    local message
    message=$(json_escape "$1")
    printf '{"type":"error","sessionId":"%s","taskId":"%s","error":"%s"}' \
        "$SESSION_ID_JSON" "$TASK_ID_JSON" "$message"
}

fail() {
    echo "ERROR: $1"
    send_terminal "$(error_payload "$1")"
    exit 1
}

on_exit() {
    local code=$?
    if [ "$TERMINAL_SENT" -eq 0 ]; then
        send_terminal "$(error_payload "Run script exited during $PHASE (exit code $code)")"
    fi
}
trap on_exit EXIT

MESSAGE_COUNT=0
INPUT_TOKENS=0
OUTPUT_TOKENS=0
LAST_TEXT=""

collect_stats() {
    MESSAGE_COUNT=0
    INPUT_TOKENS=0
    OUTPUT_TOKENS=0
    LAST_TEXT=""
    [ -f "$EVENTS_FILE" ] || return 0

    MESSAGE_COUNT=$(grep -cE '"type": ?"step_finish"' "$EVENTS_FILE")
    MESSAGE_COUNT=${MESSAGE_COUNT:-0}
    INPUT_TOKENS=$(grep -oE '"input": ?[0-9]+' "$EVENTS_FILE" | awk -F: '{s+=$2} END {print s+0}')
    OUTPUT_TOKENS=$(grep -oE '"output": ?[0-9]+' "$EVENTS_FILE" | awk -F: '{s+=$2} END {print s+0}')
    LAST_TEXT=$(grep -oE '"text": ?"([^"\\]|\\.)*"' "$EVENTS_FILE" | tail -n 1 \
        | sed -E 's/^"text": ?"//; s/"$//; s/\\n/ /g' | tr -d '\\' | tail -c 500)
}

monitor_progress() {
    local pid="$1"
    while kill -0 "$pid" 2>/dev/null; do
        sleep "$PROGRESS_INTERVAL"
        kill -0 "$pid" 2>/dev/null || break

        collect_stats
        local message
        message=$(json_escape "$(printf '%s' "${LAST_TEXT:-Working...}" | tail -c 200)")
        local payload
        payload=$(printf '{"type":"progress","sessionId":"%s","taskId":"%s","progress":{"message":"%s","messageCount":%d,"inputTokens":%d,"outputTokens":%d}}' \
            "$SESSION_ID_JSON" "$TASK_ID_JSON" "$message" \
            "$MESSAGE_COUNT" "$INPUT_TOKENS" "$OUTPUT_TOKENS")
        send_webhook "$payload" || echo "WARNING: progress update skipped"
    done
}
"""

_BODY = r"""
export PATH="$HOME/.local/bin:$HOME/bin:$HOME/.opencode/bin:/usr/local/bin:$PATH"
if ! command -v opencode &> /dev/null; then
    fail "OpenCode runtime not available after setup"
fi

PHASE="clone"
echo "Cloning repository..."
if ! git clone "$REPO_URL" "$REPO_DIR" > /tmp/git-clone.log 2>&1; then
    fail "Failed to clone repository"
fi
cd "$REPO_DIR" || fail "Repository directory missing after clone"

git config user.name "$GIT_USER_NAME"
git config user.email "$GIT_USER_EMAIL"

PHASE="checkout"
if git ls-remote --exit-code --heads origin "$BRANCH_NAME" > /dev/null 2>&1; then
    echo "Checking out existing branch: $BRANCH_NAME"
    if ! git fetch origin "$BRANCH_NAME" > /dev/null 2>&1 \
        || ! git checkout -B "$BRANCH_NAME" "origin/$BRANCH_NAME"; then
        fail "Failed to check out branch: $BRANCH_NAME"
    fi
else
    echo "Creating branch: $BRANCH_NAME"
    if ! git checkout -b "$BRANCH_NAME"; then
        fail "Failed to create branch: $BRANCH_NAME"
    fi
fi

send_webhook "$(printf '{"type":"started","sessionId":"%s","taskId":"%s"}' "$SESSION_ID_JSON" "$TASK_ID_JSON")" \
    || echo "WARNING: started notification skipped"

PHASE="agent"
echo "Running opencode..."
opencode run --format json "$PROMPT" > "$EVENTS_FILE" 2> "$STDERR_FILE" &
OPENCODE_PID=$!

monitor_progress "$OPENCODE_PID" &
MONITOR_PID=$!

wait "$OPENCODE_PID"
OPENCODE_EXIT_CODE=$?

kill "$MONITOR_PID" 2>/dev/null || true
wait "$MONITOR_PID" 2>/dev/null || true

echo "OpenCode exit code: $OPENCODE_EXIT_CODE"
PHASE="report"
collect_stats

if [ "$OPENCODE_EXIT_CODE" -eq 0 ]; then
    SUMMARY=$(json_escape "${LAST_TEXT:-Task executed successfully}")
    send_terminal "$(printf '{"type":"completed","sessionId":"%s","taskId":"%s","summary":"%s","stats":{"messageCount":%d,"inputTokens":%d,"outputTokens":%d}}' \
        "$SESSION_ID_JSON" "$TASK_ID_JSON" "$SUMMARY" \
        "$MESSAGE_COUNT" "$INPUT_TOKENS" "$OUTPUT_TOKENS")"
else
    TAIL_OUTPUT=""
    if [ -s "$STDERR_FILE" ]; then
        TAIL_OUTPUT=$(tail -n 20 "$STDERR_FILE" | tr '\n' ' ' | tail -c 500)
    elif [ -n "$LAST_TEXT" ]; then
        TAIL_OUTPUT="$LAST_TEXT"
    fi
    if [ -n "$TAIL_OUTPUT" ]; then
        ERROR_MESSAGE="OpenCode exited with code $OPENCODE_EXIT_CODE. Last output: $TAIL_OUTPUT"
    else
        ERROR_MESSAGE="OpenCode exited with code $OPENCODE_EXIT_CODE"
    fi
    send_terminal "$(error_payload "$ERROR_MESSAGE")"
fi

echo "=== Execution Complete ==="
"""
