"""
Credential sources for password and passphrase prompts.

A source is either a fixed secret or a provider called when the prompt
actually shows up. Both resolve through the same coroutine.
"""

from __future__ import annotations
import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union


@dataclass(frozen=True)
class FixedSecret:
    """A secret known up front."""
    value: str = field(repr=False)

    async def resolve(self) -> str:
        return self.value


@dataclass(frozen=True)
class SecretProvider:
    """
    Zero-argument callable producing the secret on demand.

    The callable may be a plain function or a coroutine function.
    Exceptions it raises propagate to whoever resolves it.
    """
    func: Callable[[], Union[str, Awaitable[str]]]

    async def resolve(self) -> str:
        result = self.func()
        if inspect.isawaitable(result):
            result = await result
        return str(result)


Credential = Union[FixedSecret, SecretProvider]


def as_credential(value: Any) -> Optional[Credential]:
    """Coerce a string, callable or existing source into a Credential."""
    if value is None or isinstance(value, (FixedSecret, SecretProvider)):
        return value
    if isinstance(value, str):
        return FixedSecret(value)
    if callable(value):
        return SecretProvider(value)
    raise TypeError(f"credential must be a string or a callable, got {type(value).__name__}")
