import argparse
from enum import Enum
from typing import Any, Sequence, Type


def add_verbose(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        default=False,
        help="Log at DEBUG level, including every packet sent and received.",
    )


def add_timeout(parser: argparse.ArgumentParser, default: float) -> None:
    parser.add_argument(
        "--timeout",
        type=float,
        default=default,
        help="Seconds to wait for an ACK or DATA packet on the datagram binding.",
    )


class EnumAction(argparse.Action):
    """Stores the member of ``type`` whose value matches the argument,
    ignoring case."""

    _enum: Type[Enum]

    def __init__(self, **kwargs) -> None:
        enum_type = kwargs.pop("type")

        if enum_type is None or not issubclass(enum_type, Enum):
            raise TypeError(f"EnumAction needs an Enum type, found {enum_type!r}")

        kwargs.setdefault("metavar", "{" + ",".join(e.value for e in enum_type) + "}")
        super().__init__(**kwargs)

        self._enum = enum_type

    def __call__(
        self,
        parser: argparse.ArgumentParser,
        namespace: argparse.Namespace,
        values: str | Sequence[Any] | None,
        option_string: str | None = None,
    ) -> None:
        try:
            member = self._enum(str(values).lower())
        except ValueError:
            choices = ", ".join(e.value for e in self._enum)
            raise argparse.ArgumentError(
                self, f"invalid choice: {values!r} (choose from {choices})"
            ) from None
        setattr(namespace, self.dest, member)
