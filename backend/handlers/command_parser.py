# handlers/command_parser.py
# Maps free chat text to a command name and argument.

import re
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class CommandName(str, Enum):
    TOPUP = "TOPUP"
    SALDO = "SALDO"
    HELP = "HELP"
    INFO = "INFO"
    UNKNOWN = "UNKNOWN"


class ParsedCommand(BaseModel):
    name: CommandName
    argument: Optional[str] = None
    raw: str = ""

    @property
    def amount(self) -> Optional[int]:
        """TOPUP argument as int; '50.000' and '50,000' are accepted."""
        if self.name != CommandName.TOPUP or not self.argument:
            return None
        if not _AMOUNT_PATTERN.match(self.argument):
            return None
        return int(re.sub(r"[.,]", "", self.argument))


# Plain digits, or digits grouped by thousands with "." or ","
_AMOUNT_PATTERN = re.compile(r"^(\d+|\d{1,3}([.,]\d{3})+)$")

_BARE_COMMANDS = {CommandName.SALDO, CommandName.HELP, CommandName.INFO}


def parse_command(text: Optional[str]) -> ParsedCommand:
    raw = (text or "").strip()
    parts = raw.split(None, 1)
    if not parts:
        return ParsedCommand(name=CommandName.UNKNOWN, raw=raw)

    head = parts[0].upper()
    argument = parts[1].strip() if len(parts) > 1 else None

    if head == CommandName.TOPUP.value:
        return ParsedCommand(name=CommandName.TOPUP, argument=argument, raw=raw)

    for name in _BARE_COMMANDS:
        if head == name.value and argument is None:
            return ParsedCommand(name=name, raw=raw)

    return ParsedCommand(name=CommandName.UNKNOWN, raw=raw)


__all__ = ["CommandName", "ParsedCommand", "parse_command"]
