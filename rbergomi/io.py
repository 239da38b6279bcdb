# rbergomi/io.py
"""
Parameter files and result tables.

Inputs: six text files `<path>.<stem><X>.txt`, X in H, eta, rho, T, K, xi,
one number per line.
Output: space separated table with header `xi H eta rho T K price iv stat`,
numbers with 10 significant digits.
"""

from __future__ import annotations
import io as _io
import os
import sys
from typing import Optional, TextIO, Union

import numpy as np

from rbergomi.errors import FileAccessError
from rbergomi.grid import PARAMETER_NAMES
from rbergomi.results import TABLE_COLUMNS, PricingResult


FLOAT_FORMAT = "%.10g"


def parameter_file(path: str, stem: str, name: str) -> str:
    return f"{path}.{stem}{name}.txt"


def read_vector(filename: str) -> np.ndarray:
    """One float per line; blank lines are skipped. An empty file gives an empty array."""
    try:
        with open(filename, "r") as fh:
            values = [float(line) for line in fh if line.strip()]
    except OSError as exc:
        raise FileAccessError(f"cannot read {filename}: {exc.strerror or exc}") from exc
    except ValueError as exc:
        raise FileAccessError(f"non-numeric entry in {filename}: {exc}") from exc
    return np.asarray(values, dtype=float)


def read_parameters(path: str, stem: str) -> dict:
    return {name: read_vector(parameter_file(path, stem, name)) for name in PARAMETER_NAMES}


def format_table(result: PricingResult) -> str:
    frame = result.to_frame()[TABLE_COLUMNS]
    buf = _io.StringIO()
    frame.to_csv(buf, sep=" ", index=False, float_format=FLOAT_FORMAT, na_rep="nan", lineterminator="\n")
    return buf.getvalue()


def write_table(result: PricingResult, target: Optional[Union[str, os.PathLike, TextIO]] = None) -> None:
    """Write to a file name, an open text stream, or stdout when target is None."""
    text = format_table(result)
    if target is None:
        sys.stdout.write(text)
        return
    if hasattr(target, "write"):
        target.write(text)
        return
    try:
        with open(target, "w") as fh:
            fh.write(text)
    except OSError as exc:
        raise FileAccessError(f"error while opening file {target}: {exc.strerror or exc}") from exc
