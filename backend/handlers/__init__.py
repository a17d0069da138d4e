# handlers/__init__.py
from handlers.command_parser import CommandName, ParsedCommand, parse_command
from handlers.message_handler import BotReply, MessageHandler

__all__ = [
    "CommandName",
    "ParsedCommand",
    "parse_command",
    "BotReply",
    "MessageHandler",
]
