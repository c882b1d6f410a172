import copy
import pytest

from fire_utils import build_synthetic_dataframe
from preprocessing import clean_records, make_partition


BASE_CFG = {
    'random_state': 42,
    'split': {'train_fraction': 0.75, 'n_strata': 5},
    'cv': {'n_splits': 3, 'n_repeats': 1},
    'pca': {'n_components': 4, 'max_iter': 2000, 'tol': 1e-6, 'on_nonconvergence': 'accept'},
    'models': {
        'enabled': ['linear', 'knn', 'gbr', 'rf'],
        'linear': {'alpha': 0.05},
        'knn': {'k_min': 1, 'k_max': 15, 'use_cache': False},
        'gbr': {'n_estimators': 60, 'learning_rate': 0.1, 'max_depth': 3, 'sweep': [20, 40, 60], 'use_cv': True, 'use_cache': False},
        'rf': {'n_estimators': 40, 'n_jobs': 1},
    },
    'output': {'save_model': False},
}


@pytest.fixture(scope='session')
def cfg(tmp_path_factory):
    out = tmp_path_factory.mktemp('outputs')
    conf = copy.deepcopy(BASE_CFG)
    conf['paths'] = {'data_dir': str(out), 'output_dir': str(out), 'models_dir': str(out / 'models')}
    return conf


@pytest.fixture(scope='session')
def raw_df():
    return build_synthetic_dataframe(n_rows=1000, seed=7, missing_rate=0.1)


@pytest.fixture(scope='session')
def cleaned(raw_df, cfg):
    return clean_records(cfg, raw_df)


@pytest.fixture(scope='session')
def partition(cleaned, cfg):
    return make_partition(cleaned, cfg)
