from typing import Callable, TypeVar

import jax

T = TypeVar("T")


def args_closure(
    fn: Callable[[jax.Array, T], jax.Array], args: T
) -> Callable[[jax.Array], jax.Array]:
    """Bind ``args`` so that ``fn`` can be differentiated with respect to x only."""

    def wrapped(x: jax.Array) -> jax.Array:
        return fn(x, args)

    return wrapped


def strip_aux(fn: Callable) -> Callable:
    """Drop the auxiliary output of an optimistix-style ``fn(y, args) -> (f, aux)``."""

    def wrapped(y, args):
        f_val, _ = fn(y, args)
        return f_val

    return wrapped
