"""
Session-protocol validation for session log markdown files.

A session log must be named ``YYYY-MM-DD-session-NN[-topic].md`` and
contain the Protocol Compliance, Decisions and Outcome sections. Every
``| MUST | step | [x] |`` checklist row must be ticked, and the log must
show evidence of Brain initialization, the git branch, a commit SHA and a
markdown lint run.
"""

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

FILENAME_PATTERN = r"^\d{4}-\d{2}-\d{2}-session-\d{2,}(-[A-Za-z0-9._-]+)?\.md$"

REQUIRED_SECTIONS = ("Protocol Compliance", "Decisions", "Outcome")

BRAIN_INIT_PATTERNS = (
    "mcp__plugin_brain_brain__build_context",
    "mcp__plugin_brain_brain__bootstrap_context",
    "brain__build_context",
    "brain__bootstrap_context",
    "bootstrap_context",
    "Brain MCP initialized",
    "Initialize Brain",
)

BRANCH_PATTERNS = ("**Branch**:", "Current Branch:", "- Branch:", "Branch:")
BRANCH_PLACEHOLDERS = ("[branch name]", "[branch name - REQUIRED]")

COMMIT_SHA_PATTERNS = (
    r"Commit SHA:\s*`?[a-f0-9]{7,40}\b",
    r"`[a-f0-9]{7,40}`\s*-\s*",
    r"SHA:\s*`?[a-f0-9]{7,40}\b",
)

LINT_PATTERNS = ("markdownlint", "lint output", "npx markdownlint-cli2")

_NEXT_SECTION = re.compile(r"\n#{2,3} [A-Z]")


@dataclass
class Check:
    name: str
    passed: bool
    message: str

    def to_dict(self) -> dict:
        return {"name": self.name, "passed": self.passed, "message": self.message}


@dataclass
class ValidationResult:
    session_log_path: str
    checks: list[Check] = field(default_factory=list)
    message: str = ""
    remediation: Optional[str] = None

    @property
    def valid(self) -> bool:
        return bool(self.checks) and all(c.passed for c in self.checks)

    @property
    def failed(self) -> list[Check]:
        return [c for c in self.checks if not c.passed]

    def to_dict(self) -> dict:
        data = {
            "valid": self.valid,
            "message": self.message,
            "sessionLogPath": self.session_log_path,
            "checks": [c.to_dict() for c in self.checks],
        }
        if self.remediation:
            data["remediation"] = self.remediation
        return data


def has_section(content: str, section: str) -> bool:
    return f"## {section}" in content or f"### {section}" in content


def extract_section(content: str, section: str) -> str:
    """Text from a ``##``/``###`` heading up to the next heading of that depth."""
    start = -1
    for prefix in ("### ", "## "):
        start = content.find(prefix + section)
        if start >= 0:
            break
    if start < 0:
        return ""
    body = content[start:]
    match = _NEXT_SECTION.search(body, 1)
    return body[:match.start() + 1] if match else body


def must_items(content: str) -> tuple[int, list[str]]:
    """(total MUST rows, descriptions of unticked MUST rows)."""
    total = 0
    missing = []
    for line in content.splitlines():
        line = line.strip()
        if not line.startswith("|"):
            continue
        cells = [c.strip() for c in line.split("|")]
        if len(cells) < 5:
            continue
        level, step, status = cells[1].upper(), cells[2], cells[3]
        if level != "MUST" or not step or step == "Step":
            continue
        total += 1
        if "[x]" not in status.lower():
            missing.append(step if len(step) <= 50 else step[:47] + "...")
    return total, missing


def _contains_any(content: str, patterns) -> bool:
    lower = content.lower()
    return any(p.lower() in lower for p in patterns)


def branch_documented(content: str) -> bool:
    for pattern in BRANCH_PATTERNS:
        idx = content.find(pattern)
        while idx >= 0:
            value = content[idx + len(pattern):].split("\n", 1)[0].strip()
            if value and value not in BRANCH_PLACEHOLDERS:
                return True
            idx = content.find(pattern, idx + 1)
    return False


def commit_recorded(content: str) -> bool:
    return any(re.search(p, content) for p in COMMIT_SHA_PATTERNS)


def _remediation(failed: list[Check]) -> str:
    return "Fix the following before ending the session: " + "; ".join(
        c.message for c in failed
    )


def validate_session_log(path) -> ValidationResult:
    """Run the session-protocol checks on a session log file."""
    path = Path(path)
    result = ValidationResult(session_log_path=str(path))
    checks = result.checks

    if not path.is_file():
        checks.append(Check("file_exists", False, f"File not found: {path}"))
        result.message = "Session log file not found"
        result.remediation = f"Create session log at: {path}"
        return result
    checks.append(Check("file_exists", True, "Session log file exists"))

    if re.match(FILENAME_PATTERN, path.name):
        checks.append(Check("filename_format", True,
                            "Filename matches YYYY-MM-DD-session-NN[-topic].md"))
    else:
        checks.append(Check("filename_format", False,
                            f"Filename does not match YYYY-MM-DD-session-NN[-topic].md: {path.name}"))

    try:
        content = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        checks.append(Check("file_readable", False, f"Could not read file: {e}"))
        result.message = "Could not read session log"
        result.remediation = "Ensure the file is readable UTF-8 text"
        return result
    checks.append(Check("file_readable", True, "Session log is readable"))

    for section in REQUIRED_SECTIONS:
        name = "section_" + section.lower().replace(" ", "_")
        if has_section(content, section):
            checks.append(Check(name, True, f"Section present: {section}"))
        else:
            checks.append(Check(name, False, f"Missing required section: {section}"))

    total, missing = must_items(content)
    if not missing:
        checks.append(Check("must_items_checked", True, f"All {total} MUST items completed"))
    else:
        checks.append(Check(
            "must_items_checked", False,
            f"{total - len(missing)}/{total} MUST items completed. Missing: {', '.join(missing)}",
        ))

    initialized = _contains_any(content, BRAIN_INIT_PATTERNS)
    checks.append(Check(
        "brain_initialized", initialized,
        "Brain initialization evidence found" if initialized
        else "No Brain initialization evidence (bootstrap_context or 'Brain MCP initialized')",
    ))
    documented = branch_documented(content)
    checks.append(Check(
        "branch_documented", documented,
        "Git branch documented" if documented else "Git branch not documented (Branch: <name>)",
    ))
    committed = commit_recorded(content)
    checks.append(Check(
        "commit_evidence", committed,
        "Commit SHA recorded" if committed else "No commit SHA recorded (expected: Commit SHA: <hash>)",
    ))
    linted = _contains_any(content, LINT_PATTERNS)
    checks.append(Check(
        "lint_evidence", linted,
        "Markdown lint evidence found" if linted else "No markdown lint evidence found",
    ))

    if result.valid:
        result.message = "Session protocol validation passed"
    else:
        result.message = "Session protocol validation failed"
        result.remediation = _remediation(result.failed)
    return result
