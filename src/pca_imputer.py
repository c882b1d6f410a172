import dataclasses
import numpy as np
import pandas as pd
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence
from sklearn.decomposition import PCA
from sklearn.preprocessing import StandardScaler

from fire_utils import WEATHER_COLUMNS, ConvergenceError, SchemaError


@dataclass(frozen=True)
class ImputationResult:
    values: pd.DataFrame
    n_iter: int
    converged: bool
    change: float
    n_missing: int


def impute_pca(block: pd.DataFrame, n_components: int = 4, max_iter: int = 1000, tol: float = 1e-6) -> ImputationResult:
    # Alternate a rank-n_components reconstruction with refilling only the missing cells.
    # tol bounds the mean squared change of refilled cells in column sd units; rows with nothing observed stay missing
    frame = block.apply(pd.to_numeric, errors='coerce').astype(float)
    X = frame.to_numpy(copy=True)
    mask = np.isnan(X)
    n_missing = int(mask.sum())
    if n_missing == 0:
        return ImputationResult(frame.copy(), 0, True, 0.0, 0)

    empty_cols = [c for c, empty in zip(frame.columns, mask.all(axis=0)) if empty]
    if empty_cols:
        raise SchemaError(f"Cannot impute columns with no observed values: {empty_cols}")

    rows = ~mask.all(axis=1)
    Xw = X[rows]
    mw = mask[rows]
    if not mw.any() or Xw.shape[0] < 2:
        return ImputationResult(frame.copy(), 0, True, 0.0, n_missing)

    col_means = np.nanmean(Xw, axis=0)
    Xw[mw] = np.take(col_means, np.nonzero(mw)[1])
    rank = max(1, min(n_components, Xw.shape[0] - 1, Xw.shape[1]))

    change = np.inf
    converged = False
    n_iter = 0
    for n_iter in range(1, max_iter + 1):
        mu = Xw.mean(axis=0)
        sd = Xw.std(axis=0)
        sd[sd == 0] = 1.0
        Z = (Xw - mu) / sd
        pca = PCA(n_components=rank, svd_solver='full')
        recon = pca.inverse_transform(pca.fit_transform(Z)) * sd + mu
        delta = ((recon - Xw) / sd)[mw]
        change = float(np.mean(delta ** 2))
        Xw[mw] = recon[mw]
        if change < tol:
            converged = True
            break

    X[rows] = Xw
    result = ImputationResult(pd.DataFrame(X, index=frame.index, columns=frame.columns), n_iter, converged, change, n_missing)
    if not converged:
        raise ConvergenceError(
            f"PCA imputation did not converge in {max_iter} iterations (last change {change:.3g}, tol {tol:g})",
            result=result,
        )
    return result


class WeatherReducer:
    def __init__(self, n_components: int = 4, columns: Sequence[str] = WEATHER_COLUMNS, max_iter: int = 1000, tol: float = 1e-6, on_nonconvergence: str = 'raise', seed: int = 42):
        if on_nonconvergence not in ('raise', 'accept'):
            raise ValueError(f"on_nonconvergence must be 'raise' or 'accept', got {on_nonconvergence!r}")
        self.n_components = n_components
        self.columns = list(columns)
        self.max_iter = max_iter
        self.tol = tol
        self.on_nonconvergence = on_nonconvergence
        self.seed = seed
        self.imputation_: Optional[ImputationResult] = None
        self.scaler_: Optional[StandardScaler] = None
        self.pca_: Optional[PCA] = None
        self.rows_dropped_: int = 0

    @property
    def component_names(self) -> List[str]:
        return [f'PC{i + 1}' for i in range(self.n_components)]

    def fit_transform(self, df: pd.DataFrame, label: str = 'data') -> pd.DataFrame:
        missing_cols = [c for c in self.columns if c not in df.columns]
        if missing_cols:
            raise SchemaError(f"Weather columns not present: {missing_cols}")

        try:
            result = impute_pca(df[self.columns], self.n_components, self.max_iter, self.tol)
        except ConvergenceError as exc:
            if self.on_nonconvergence == 'raise':
                raise
            print(f"Warning [{label}]: {exc}; accepting best-effort imputation")
            result = exc.result
        self.imputation_ = result
        print(f"Imputed {result.n_missing} weather cells [{label}] in {result.n_iter} iterations (converged={result.converged})")

        completed = result.values
        keep = ~completed.isna().any(axis=1)
        self.rows_dropped_ = int((~keep).sum())
        if self.rows_dropped_:
            print(f"Dropped {self.rows_dropped_} rows [{label}] with weather values left missing after imputation")
        if int(keep.sum()) < self.n_components:
            raise ValueError(f"Only {int(keep.sum())} complete rows [{label}]; need at least {self.n_components} for PCA")

        self.scaler_ = StandardScaler()
        Z = self.scaler_.fit_transform(completed.loc[keep])
        self.pca_ = PCA(n_components=self.n_components, svd_solver='full', random_state=self.seed)
        scores = self.pca_.fit_transform(Z)

        kept = df.loc[keep.to_numpy()].drop(columns=self.columns)
        pcs = pd.DataFrame(scores, index=kept.index, columns=self.component_names)
        return pd.concat([kept, pcs], axis=1).reset_index(drop=True)


def get_pca_config(cfg: Dict) -> Dict:
    pca_cfg = cfg.get('pca', {}) or {}
    return {
        'n_components': int(pca_cfg.get('n_components', 4)),
        'max_iter': int(pca_cfg.get('max_iter', 1000)),
        'tol': float(pca_cfg.get('tol', 1e-6)),
        'on_nonconvergence': str(pca_cfg.get('on_nonconvergence', 'raise')),
    }


def reduce_partition(partition, cfg: Dict):
    # Separate fits per partition: no mean, scale or basis crosses from test to train
    params = get_pca_config(cfg)
    train_reducer = WeatherReducer(seed=partition.seed, **params)
    test_reducer = WeatherReducer(seed=partition.seed, **params)
    train = train_reducer.fit_transform(partition.train, label='train')
    test = test_reducer.fit_transform(partition.test, label='test')
    explained = train_reducer.pca_.explained_variance_ratio_
    print(f"Train PCA explained variance: {np.round(explained, 3).tolist()} (total {explained.sum():.3f})")
    return dataclasses.replace(partition, train=train, test=test, cv_folds=[])
