"""
命令安全检查：危险命令黑名单。

节点 Shell 命令下发前必须通过这里。黑名单硬编码，不允许通过配置文件或环境变量覆盖。
"""
from __future__ import annotations

import re

from pvehub.core.exceptions import PolicyViolation

# === 危险子串（不区分大小写的包含匹配） ===
DANGEROUS_COMMANDS: list[str] = [
    "rm -rf /",
    "mkfs",
    "dd if=",
    ":(){:|:&};:",
    "> /dev/sda",
    "chmod -R 777 /",
    "chown -R",
    "shutdown",
    "reboot",
    "init 0",
    "init 6",
    "halt",
    "poweroff",
]

# === 禁止模式 ===
FORBIDDEN_PATTERNS: list[str] = [
    # 删除根目录，允许任意短选项组合
    r"rm\s+(-[a-z]*\s+)*/($|\s)",
    r"rm\s+-rf\s+/\*",
    r"dd\s+.*of=/dev/[sh]d",
    r">\s*/dev/[sh]d",
    # fork 炸弹的空白变体
    r":\s*\(\s*\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;\s*:",
    r"curl\s+.*\|\s*(ba)?sh",
    r"wget\s+.*\|\s*(ba)?sh",
]

_FORBIDDEN_RE = [re.compile(p, re.IGNORECASE) for p in FORBIDDEN_PATTERNS]


def check_command_safety(cmd: str) -> tuple[bool, str]:
    """检查命令是否安全。返回 (is_safe, reason)。"""
    cmd_stripped = cmd.strip()

    if not cmd_stripped:
        return False, "Empty command"

    cmd_lower = cmd_stripped.lower()
    for dangerous in DANGEROUS_COMMANDS:
        if dangerous.lower() in cmd_lower:
            return False, f"Command contains dangerous operation: {dangerous}"

    for pattern in _FORBIDDEN_RE:
        if pattern.search(cmd_stripped):
            return False, f"Matches forbidden pattern: {pattern.pattern}"

    return True, "OK"


def ensure_command_safe(cmd: str) -> None:
    """不安全时抛出 PolicyViolation。"""
    safe, reason = check_command_safety(cmd)
    if not safe:
        raise PolicyViolation("Command rejected by safety policy", detail=reason)
