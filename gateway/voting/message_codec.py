"""
Canonical signed-message codec.

The wallet signs exactly this text (whitespace-significant):

    <AppName> Action
    Wallet: <lowercased address>
    Timestamp: <integer millis>
    Action: <action name>

Binding address, timestamp and action into the signed bytes is what stops a
signature from being reused for another wallet, time or endpoint.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from voting import settings
from voting.errors import MalformedMessage


@dataclass(frozen=True)
class SignedAction:
    app_name:       str
    wallet_address: str
    timestamp_ms:   int
    action:         str


class MessageCodec:

    def __init__(self, app_name: str = settings.APP_NAME):
        self.app_name = app_name

    @property
    def header(self) -> str:
        return f"{self.app_name} Action"

    def expected_prefix(self, address: str, timestamp_ms: int, action: Optional[str] = None) -> str:
        prefix = f"{self.header}\nWallet: {address.lower()}\nTimestamp: {timestamp_ms}"
        if action is not None:
            prefix += f"\nAction: {action}"
        return prefix

    def build(self, wallet_address: str, timestamp_ms: int, action: str) -> str:
        return self.expected_prefix(wallet_address, timestamp_ms, action)

    def matches_expected(
        self,
        address:      str,
        timestamp_ms: int,
        message:      str,
        action:       Optional[str] = None,
    ) -> bool:
        if not isinstance(message, str):
            return False
        expected = self.expected_prefix(address, timestamp_ms, action)
        if not message.startswith(expected):
            return False
        if action is None:
            return True
        # "Action: vote" must not also accept "Action: vote-anything"
        rest = message[len(expected):]
        return rest == "" or rest.startswith("\n")

    def parse(self, message: str) -> SignedAction:
        lines = message.split("\n")
        if len(lines) < 4 or lines[0] != self.header:
            raise MalformedMessage("message header does not match")

        fields = {}
        for line, name in zip(lines[1:4], ("Wallet", "Timestamp", "Action")):
            label, sep, value = line.partition(": ")
            if label != name or not sep or not value:
                raise MalformedMessage(f"expected '{name}: <value>' line")
            fields[name] = value

        ts_raw = fields["Timestamp"]
        if not ts_raw.isdigit():
            raise MalformedMessage("timestamp is not an integer")

        return SignedAction(
            app_name       = self.app_name,
            wallet_address = fields["Wallet"],
            timestamp_ms   = int(ts_raw),
            action         = fields["Action"],
        )


default_codec = MessageCodec()
