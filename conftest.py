"""Pytest configuration for the documentation examples."""

from os import chdir, getcwd
from pathlib import Path
from tempfile import TemporaryDirectory
from typing import Any

from sybil import Sybil
from sybil.parsers.markdown import PythonCodeBlockParser, SkipParser


def documentation_setup(namespace: dict[str, Any]) -> None:
    """Change to a scratch directory so examples can write files."""
    tmp = TemporaryDirectory()
    namespace["_tmpdir"] = tmp
    namespace["_cwd"] = getcwd()
    chdir(tmp.name)


def documentation_teardown(namespace: dict[str, Any]) -> None:
    """Restore the working directory and remove the scratch directory."""
    chdir(namespace["_cwd"])
    namespace["_tmpdir"].cleanup()


pytest_collect_file = Sybil(
    parsers=[
        PythonCodeBlockParser(),
        SkipParser(),
    ],
    path=str(Path(__file__).parent / "docs"),
    pattern="**/*.md",
    setup=documentation_setup,
    teardown=documentation_teardown,
).pytest()
