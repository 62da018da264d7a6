"""AMQP topic routing key matching."""
from functools import lru_cache
from typing import Tuple


def routing_key_matches(pattern: str, routing_key: str) -> bool:
    """Check a routing key against a topic binding pattern.

    ``*`` matches exactly one word and ``#`` matches zero or more words,
    words being separated by dots.

    Example:
        routing_key_matches("order.*", "order.created")         # True
        routing_key_matches("order.#", "order.item.added")      # True
        routing_key_matches("order.*", "order.item.added")      # False
    """
    return _match(tuple(pattern.split(".")), tuple(routing_key.split(".")))


@lru_cache(maxsize=1024)
def _match(pattern: Tuple[str, ...], words: Tuple[str, ...]) -> bool:
    if not pattern:
        return not words

    head, rest = pattern[0], pattern[1:]
    if head == "#":
        return any(_match(rest, words[i:]) for i in range(len(words) + 1))
    if not words:
        return False
    if head == "*" or head == words[0]:
        return _match(rest, words[1:])
    return False
