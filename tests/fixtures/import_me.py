"""Helper script loaded into a background context before the task runs."""

__all__ = ["imported_echo"]


def imported_echo(value: object, done) -> None:
    """Answer with the received value.

    :param value: Value to echo.
    :param done: Terminal callback of the invocation.
    """
    done(value)
