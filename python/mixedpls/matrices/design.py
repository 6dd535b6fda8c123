from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np
import pandas as pd
from numpy.typing import NDArray

from mixedpls.matrices.remat import ReMat, remat

_INTERCEPT_NAMES = ("1", "(Intercept)")

RandomSpec = tuple[str, Sequence[str]] | str


@dataclass
class ModelMatrices:
    """Numeric inputs of a mixed model, built from a DataFrame."""

    X: NDArray[np.floating]
    y: NDArray[np.floating]
    terms: list[ReMat]
    fixed_names: list[str]
    weights: NDArray[np.floating] | None = None

    @property
    def n_obs(self) -> int:
        return self.y.shape[0]

    @property
    def n_fixed(self) -> int:
        return self.X.shape[1]


def build_model_matrices(
    data: pd.DataFrame,
    response: str,
    fixed: Sequence[str],
    random: Sequence[RandomSpec],
    weights: str | None = None,
    intercept: bool = True,
) -> ModelMatrices:
    """Build ``X``, ``y`` and the random-effects terms from explicit column lists.

    Parameters
    ----------
    data : DataFrame
        Source data. Rows with missing values in any used column are dropped.
    response : str
        Response column.
    fixed : sequence of str
        Fixed-effects columns. Columns that are not numeric, and boolean
        columns, are dummy coded against their first level; ``"a:b"`` is an interaction.
    random : sequence
        One entry per random-effects term: a grouping column name for a
        random intercept, or ``(group, columns)`` where ``columns`` may
        include ``"1"`` for the intercept. ``"a:b"`` as the group means
        the interaction of two grouping columns.
    weights : str, optional
        Prior-weights column.
    intercept : bool, default True
        Prepend an intercept column to ``X``.

    Examples
    --------
    >>> mm = build_model_matrices(
    ...     sleepstudy, "Reaction", ["Days"], [("Subject", ["1", "Days"])]
    ... )
    >>> mm.X.shape
    (180, 2)
    """
    specs = [_normalize_random(r) for r in random]
    used = {response, *_split_all(fixed)}
    for group, cols in specs:
        used.update(group.split(":"))
        used.update(c for c in cols if c not in _INTERCEPT_NAMES)
    if weights is not None:
        used.add(weights)
    missing = sorted(c for c in used if c not in data.columns)
    if missing:
        raise ValueError(f"Columns not found in data: {', '.join(missing)}")
    data = data.dropna(subset=sorted(used)).reset_index(drop=True)

    X, fixed_names = build_fixed_matrix(data, fixed, intercept)
    y = data[response].to_numpy(dtype=np.float64)
    terms = [_build_term(data, group, cols) for group, cols in specs]
    wts = None if weights is None else data[weights].to_numpy(dtype=np.float64)
    return ModelMatrices(X=X, y=y, terms=terms, fixed_names=fixed_names, weights=wts)


def _split_all(names: Sequence[str]) -> list[str]:
    return [part for name in names for part in name.split(":")]


def _normalize_random(spec: RandomSpec) -> tuple[str, list[str]]:
    if isinstance(spec, str):
        return spec, ["1"]
    group, cols = spec
    if isinstance(cols, str):
        cols = [cols]
    if not cols:
        raise ValueError(f"random-effects term for '{group}' has no columns")
    return group, list(cols)


def build_fixed_matrix(
    data: pd.DataFrame,
    fixed: Sequence[str],
    intercept: bool = True,
) -> tuple[NDArray[np.floating], list[str]]:
    n = len(data)
    columns: list[NDArray[np.floating]] = []
    names: list[str] = []

    if intercept:
        columns.append(np.ones(n, dtype=np.float64))
        names.append("(Intercept)")

    for term in fixed:
        variables = tuple(term.split(":"))
        if len(variables) == 1:
            cols, nms = _encode_variable(variables[0], data)
        else:
            cols, nms = _encode_interaction(variables, data)
        columns.extend(cols)
        names.extend(nms)

    if not columns:
        return np.zeros((n, 0), dtype=np.float64), []
    return np.column_stack(columns), names


def _encode_variable(name: str, data: pd.DataFrame) -> tuple[list[NDArray[np.floating]], list[str]]:
    col = data[name]

    if pd.api.types.is_numeric_dtype(col) and not pd.api.types.is_bool_dtype(col):
        return [col.to_numpy(dtype=np.float64)], [name]
    return _encode_categorical(name, col)


def _encode_categorical(
    name: str,
    col: pd.Series,  # type: ignore[type-arg]
) -> tuple[list[NDArray[np.floating]], list[str]]:
    if col.dtype.name == "category":
        categories = col.cat.categories.tolist()
    else:
        categories = sorted(col.unique().tolist())

    columns = [(col == cat).to_numpy(dtype=np.float64) for cat in categories[1:]]
    names = [f"{name}{cat}" for cat in categories[1:]]
    return columns, names


def _encode_interaction(
    variables: tuple[str, ...], data: pd.DataFrame
) -> tuple[list[NDArray[np.floating]], list[str]]:
    result_cols = [np.ones(len(data), dtype=np.float64)]
    result_names = [""]
    for var in variables:
        cols, nms = _encode_variable(var, data)
        result_cols = [rc * c for rc in result_cols for c in cols]
        result_names = [f"{rn}:{nm}" if rn else nm for rn in result_names for nm in nms]
    return result_cols, result_names


def _grouping_factor(data: pd.DataFrame, group: str) -> NDArray:
    parts = group.split(":")
    if len(parts) == 1:
        return data[group].to_numpy()
    return data[parts].astype(str).agg(":".join, axis=1).to_numpy()


def _build_term(data: pd.DataFrame, group: str, cols: Sequence[str]) -> ReMat:
    z_cols: list[NDArray[np.floating]] = []
    names: list[str] = []
    for c in cols:
        if c in _INTERCEPT_NAMES:
            z_cols.append(np.ones(len(data), dtype=np.float64))
            names.append("(Intercept)")
        else:
            encoded, nms = _encode_variable(c, data)
            z_cols.extend(encoded)
            names.extend(nms)
    z = np.column_stack(z_cols)
    return remat(_grouping_factor(data, group), z, name=group, column_names=names)
