"""Execution policy and interactive approval gate."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass

from agent_toolgate.application.models import ApprovalDecision, ExecutionPolicy
from agent_toolgate.infrastructure.logging import get_logger

logger = get_logger(__name__)

# 承認プロンプトを表示し、利用者の生の回答を返すコールバック
# 入力待ちの間はイベントループをブロックする（同期呼び出し）
ApprovalCallback = Callable[[str], str]

# シェル機能（連結・リダイレクト・置換・グロブなど）を構成する文字
# 改行・復帰もコマンド連結に使えるため含める
DANGEROUS_CHARACTERS = frozenset(";|&`$()<>*?[]{}!~\n\r")

DANGEROUS_PATTERNS: tuple[str, ...] = (
    "rm -rf",
    "rmdir",
    "del ",
    "format",
    "fdisk",
    "mkfs",
    "dd if=",
    "shutdown",
    "reboot",
    "halt",
    "poweroff",
    "sudo",
    "su ",
    "chmod 777",
    "chown root",
    "passwd",
    "/etc/",
    "/bin/",
    "/sbin/",
    "/usr/bin/",
    "/usr/sbin/",
)

METACHARACTER_REASON = (
    "Command contains potentially dangerous shell metacharacters. "
    "Only basic commands without shell features are allowed."
)


@dataclass(frozen=True)
class GateResult:
    """ゲート判定の結果."""

    decision: ApprovalDecision
    requires_approval: bool
    reason: str | None = None

    @property
    def approved(self) -> bool:
        """実行してよいかどうか."""
        return self.decision in (
            ApprovalDecision.AUTO_APPROVED,
            ApprovalDecision.USER_APPROVED,
        )


def find_dangerous_construct(command: str) -> str | None:
    """
    コマンドに含まれる危険な文字・パターンを検出する.

    Args:
        command: シェルコマンド文字列

    Returns:
        拒否理由のメッセージ。安全な場合は None
    """
    if any(ch in DANGEROUS_CHARACTERS for ch in command):
        return METACHARACTER_REASON

    lowered = command.lower()
    for pattern in DANGEROUS_PATTERNS:
        if pattern in lowered:
            return (
                f"Command contains potentially dangerous pattern: '{pattern}'. "
                "This command is not allowed for security reasons."
            )
    return None


def _match_prefix(command: str, prefixes: tuple[str, ...] | None) -> str | None:
    """コマンドに一致する最初のプレフィックスを返す."""
    if not prefixes:
        return None
    return next((p for p in prefixes if command.startswith(p)), None)


class ApprovalGate:
    """
    コマンド実行の可否を判定するゲート.

    シェルコマンドは次の順に評価する:

    1. 危険な文字・パターンを含む → policy_blocked（確認なし）
    2. blocked_commands のプレフィックスに一致 → policy_blocked
    3. allowed_commands が空でなく、プレフィックスに一致 → auto_approved
    4. それ以外 → 利用者に確認（"y" のみ承認）

    allowed_commands は既定の動作を「常に確認」から「一致すれば自動実行」に
    切り替えるだけで、一致しないコマンドを禁止するものではない。
    """

    def __init__(
        self,
        policy: ExecutionPolicy | None = None,
        approver: ApprovalCallback | None = None,
    ) -> None:
        """
        Initialize ApprovalGate.

        Args:
            policy: 実行ポリシー（None の場合は空のポリシー）
            approver: 承認プロンプトのコールバック（None の場合、確認が必要な要求はすべて拒否）
        """
        self.policy = policy or ExecutionPolicy()
        self._approver = approver

    def check_command(self, command: str) -> GateResult:
        """
        シェルコマンドを評価し、必要なら利用者に確認する.

        Args:
            command: シェルコマンド文字列

        Returns:
            判定結果
        """
        reason = find_dangerous_construct(command)
        if reason is not None:
            logger.warning("Blocked dangerous command", command=command)
            return GateResult(
                ApprovalDecision.POLICY_BLOCKED, requires_approval=False, reason=reason
            )

        blocked = _match_prefix(command, self.policy.blocked_commands)
        if blocked is not None:
            logger.warning(
                "Blocked command by exec policy", command=command, prefix=blocked
            )
            return GateResult(
                ApprovalDecision.POLICY_BLOCKED,
                requires_approval=False,
                reason=f"Command '{command}' is blocked by exec policy.",
            )

        if self.policy.allowed_commands:
            allowed = _match_prefix(command, self.policy.allowed_commands)
            if allowed is not None:
                logger.info(
                    "Auto-approved command by exec policy",
                    command=command,
                    prefix=allowed,
                )
                return GateResult(
                    ApprovalDecision.AUTO_APPROVED, requires_approval=False
                )

        return self.confirm(f"Execute command? {command} (y/n): ")

    def confirm(self, prompt: str) -> GateResult:
        """
        利用者に確認を求める.

        承認コールバックの呼び出しは同期的で、回答が得られるまで
        呼び出し元のイベントループをブロックする。

        Args:
            prompt: 表示するプロンプト

        Returns:
            user_approved または user_rejected
        """
        if self._approver is None:
            logger.info("No approver configured, rejecting request", prompt=prompt)
            return GateResult(ApprovalDecision.USER_REJECTED, requires_approval=True)

        answer = self._approver(prompt)
        if answer.strip().lower() == "y":
            return GateResult(ApprovalDecision.USER_APPROVED, requires_approval=True)

        logger.info("Request rejected by user", prompt=prompt)
        return GateResult(ApprovalDecision.USER_REJECTED, requires_approval=True)
