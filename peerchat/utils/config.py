"""TOML serialization of pydantic configuration models."""
from __future__ import annotations

import pathlib
import sys
from typing import BinaryIO
from typing import TypeVar

import tomli_w
from pydantic import BaseModel

if sys.version_info >= (3, 11):  # pragma: >=3.11 cover
    import tomllib
else:  # pragma: <3.11 cover
    import tomli as tomllib


BaseModelT = TypeVar('BaseModelT', bound=BaseModel)


def dump(model: BaseModel, fp: BinaryIO) -> None:
    """Serialize a config model as a TOML formatted stream.

    TOML has no null value so attributes set to `None` are omitted.
    """
    tomli_w.dump(model.model_dump(exclude_none=True), fp)


def dumps(model: BaseModel) -> str:
    """Serialize a config model to a TOML formatted string."""
    return tomli_w.dumps(model.model_dump(exclude_none=True))


def load(model: type[BaseModelT], fp: BinaryIO) -> BaseModelT:
    """Parse TOML from a binary file to a config model."""
    return model.model_validate(tomllib.load(fp))


def loads(model: type[BaseModelT], data: str) -> BaseModelT:
    """Parse a TOML string to a config model."""
    return model.model_validate(tomllib.loads(data))


def read_file(model: type[BaseModelT], path: str | pathlib.Path) -> BaseModelT:
    """Parse a TOML file to a config model.

    Args:
        model: Config model type to parse the file with.
        path: Path of the TOML file.

    Returns:
        Model initialized from the file. Values missing from the file are
        set to their defaults.
    """
    with open(path, 'rb') as f:
        return load(model, f)


def write_file(model: BaseModel, path: str | pathlib.Path) -> None:
    """Write a config model to a TOML file.

    Parent directories of `path` are created if needed.
    """
    path = pathlib.Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'wb') as f:
        dump(model, f)
