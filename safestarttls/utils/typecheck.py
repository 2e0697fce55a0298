import typing
from types import UnionType


def check_option_type(name: str, value: typing.Any, typeinfo: typing.Any) -> None:
    """
    Check if the provided value is an instance of typeinfo and raise a
    TypeError otherwise. Only the types used by `safestarttls.options` are supported:
    plain classes and Optional[...] of them.
    """
    e = TypeError(f"Expected {typeinfo} for {name}, but got {type(value)}.")

    origin = typing.get_origin(typeinfo)

    if origin is typing.Union or origin is UnionType:
        for T in typing.get_args(typeinfo):
            try:
                check_option_type(name, value, T)
            except TypeError:
                pass
            else:
                return
        raise e
    elif typeinfo is typing.Any:
        return
    elif isinstance(value, bool) and typeinfo in (int, float):
        # bool is an int subclass, but True is never a sensible timeout.
        raise e
    elif not isinstance(value, typeinfo):
        if typeinfo is float and isinstance(value, int):
            return
        raise e


def typespec_to_str(typespec: typing.Any) -> str:
    if typespec in (str, int, float, bool):
        return typespec.__name__
    elif typespec == typing.Optional[str]:
        return "optional str"
    elif typespec == typing.Optional[int]:
        return "optional int"
    elif typespec == typing.Optional[float]:
        return "optional float"
    raise NotImplementedError(typespec)
