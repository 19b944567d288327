"""Fake collaborators shared across the test suite."""

import asyncio
import json
from typing import Any


class FakeInsightGenerator:
    """Stands in for the generative-text collaborator."""

    def __init__(self, response: str = "Readings look steady.", fail: bool = False, delay: float = 0.0) -> None:
        self.response = response
        self.fail = fail
        self.delay = delay
        self.prompts: list[str] = []

    async def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail:
            raise RuntimeError("provider unavailable")
        return self.response


class RecordingTransport:
    """Transport that keeps every message, or fails on demand."""

    def __init__(self, name: str = "recording", fail: bool = False, raises: bool = False) -> None:
        self.name = name
        self.fail = fail
        self.raises = raises
        self.closed = False
        self.messages: list[str] = []

    async def send(self, message: str) -> bool:
        if self.raises:
            raise ConnectionResetError("peer reset")
        if self.fail or self.closed:
            return False
        self.messages.append(message)
        return True

    def decoded(self) -> list[dict[str, Any]]:
        return [json.loads(m) for m in self.messages]

    def batches(self) -> list[dict[str, Any]]:
        return [m for m in self.decoded() if m["type"] != "subscription-confirmed"]

