"""Result unwrapping for assertions."""

from typing import Any

from kungfu import Ok, Error


def expect_ok(result: Any) -> Any:
    match result:
        case Ok(value):
            return value
        case Error(error):
            raise AssertionError(f"expected Ok, got Error({error!r})")
        case _:
            raise AssertionError(f"not a Result: {result!r}")


def expect_error(result: Any) -> Any:
    match result:
        case Error(error):
            return error
        case Ok(value):
            raise AssertionError(f"expected Error, got Ok({value!r})")
        case _:
            raise AssertionError(f"not a Result: {result!r}")
