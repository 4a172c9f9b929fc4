"""
Immutable level tables for categorical columns.
"""

from dataclasses import dataclass

import pandas as pd


@dataclass(frozen=True)
class LevelIndex:
    """Sorted set of observed values, each mapped to a stable 1-based id"""
    levels: tuple

    @classmethod
    def from_values(cls, values) -> 'LevelIndex':
        """Build from any iterable of values; missing values are ignored"""
        observed = pd.Series(list(values), dtype=object).dropna().astype(str).unique()
        return cls(tuple(sorted(observed)))

    @classmethod
    def from_categorical(cls, series: pd.Series) -> 'LevelIndex':
        """Reuse the category order of an existing categorical column"""
        return cls(tuple(series.cat.categories))

    def __len__(self) -> int:
        return len(self.levels)

    def __contains__(self, value) -> bool:
        return value in self.levels

    def id_of(self, value) -> int:
        """1-based id of `value`"""
        try:
            return self.levels.index(value) + 1
        except ValueError:
            raise KeyError(f"Unknown level: {value!r}") from None

    def level_of(self, level_id: int):
        if not 1 <= level_id <= len(self.levels):
            raise KeyError(f"Unknown level id: {level_id}")
        return self.levels[level_id - 1]

    def categorical(self, series: pd.Series) -> pd.Series:
        """Recode `series` as a categorical over exactly these levels"""
        text = series.astype(str).where(series.notna())
        return pd.Series(
            pd.Categorical(text, categories=list(self.levels)),
            index=series.index,
            name=series.name,
        )

    def ids_for(self, series: pd.Series) -> pd.Series:
        """Integer ids for `series`; values outside the index are an error"""
        codes = self.categorical(series).cat.codes
        if (codes < 0).any():
            unknown = sorted(series[codes < 0].astype(str).unique())
            raise KeyError(f"Values outside level index: {unknown[:5]}")
        return (codes + 1).astype(int)
