from dataclasses import dataclass
from typing import Awaitable, Callable


@dataclass(frozen=True)
class ControlCommand:
    action: str
    payload: dict | None = None


CommandHandler = Callable[[ControlCommand], Awaitable[dict]]
