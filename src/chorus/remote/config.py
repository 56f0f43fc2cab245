import argparse
import os
from dataclasses import dataclass, field
from typing import List, Optional


def parse_user_id(value: Optional[str]) -> Optional[int]:
    """First entry of a comma separated id list, or None."""
    if not value:
        return None
    first = value.split(",")[0].strip()
    try:
        return int(first) or None
    except ValueError:
        return None


@dataclass
class BridgeConfig:
    """Chat bridge settings. CLI flags win over environment variables, which win over defaults."""
    token: str
    owner_id: Optional[int] = None
    pairing_code: Optional[str] = None
    project_dir: str = field(default_factory=os.getcwd)
    max_time: float = 300.0
    claude_bin: str = "claude"
    poll_timeout: int = 30
    retry_delay: float = 5.0
    progress_interval: float = 1.5
    progress_lines: int = 6
    max_message_length: int = 4000

    @property
    def agent_command(self) -> List[str]:
        return self.claude_bin.split()

    @classmethod
    def build_parser(cls) -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(
            prog="chorus-remote",
            description="Relay chat prompts to a headless coding agent.",
        )
        parser.add_argument("--token", help="bot token (TELEGRAM_BOT_TOKEN)")
        parser.add_argument("--user-id", help="owner user id; skips pairing (ALLOWED_USER_IDS)")
        parser.add_argument("--pairing-code", help="one-time code the owner sends with /start")
        parser.add_argument("--project", help="default project directory (PROJECT_DIR)")
        parser.add_argument("--max-time", type=float, help="seconds per exchange (MAX_EXECUTION_TIME)")
        parser.add_argument("--claude-bin", help="agent executable (CLAUDE_BIN)")
        return parser

    @classmethod
    def from_args(cls, argv: Optional[List[str]] = None) -> "BridgeConfig":
        parser = cls.build_parser()
        args = parser.parse_args(argv)
        token = args.token or os.environ.get("TELEGRAM_BOT_TOKEN")
        if not token:
            parser.error("a bot token is required (--token=<BOT_TOKEN> or TELEGRAM_BOT_TOKEN)")
        return cls(
            token=token,
            owner_id=parse_user_id(args.user_id or os.environ.get("ALLOWED_USER_IDS")),
            pairing_code=args.pairing_code,
            project_dir=args.project or os.environ.get("PROJECT_DIR") or os.getcwd(),
            max_time=args.max_time if args.max_time is not None else float(os.environ.get("MAX_EXECUTION_TIME", "300")),
            claude_bin=args.claude_bin or os.environ.get("CLAUDE_BIN", "claude"),
        )
