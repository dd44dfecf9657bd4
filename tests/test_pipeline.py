"""
Unit tests for the YAML configured training pipeline
"""
import mlflow
import numpy as np
import pytest

from pysbr import ConfigError, ImplicitSequenceModel, TrainingPipeline
from conftest import make_cyclic_interactions


def _small_config(**model_changes):
    config = TrainingPipeline.create_default_config()
    config['model'].update(
        embedding_dim=4, num_epochs=2, num_negative_trials=5)
    config['model'].update(model_changes)
    config['training']['log_level'] = 0
    return config


def test_default_config_sections():
    """Default config holds every section the pipeline reads"""
    config = TrainingPipeline.create_default_config()
    for section in ('model', 'training', 'data', 'mlflow', 'sweep'):
        assert section in config
    pipeline = TrainingPipeline(config=config)
    hp = pipeline.build_hyperparameters(num_items=12)
    assert hp.num_items == 12
    assert hp.embedding_dim == config['model']['embedding_dim']


def test_config_roundtrip_through_yaml(tmp_path):
    """Saved configs load back unchanged"""
    path = tmp_path / 'config.yaml'
    config = _small_config()
    TrainingPipeline.save_config(config, str(path))
    pipeline = TrainingPipeline(config_path=str(path))
    assert pipeline.cfg_raw == config
    assert pipeline.cfg['model.embedding_dim'] == 4
    assert not any(key.startswith('sweep') for key in pipeline.cfg)


def test_unreadable_config_files(tmp_path):
    """YAML that is broken or not a mapping raises ConfigError"""
    broken = tmp_path / 'broken.yaml'
    broken.write_text('model: [unclosed\n')
    with pytest.raises(ConfigError):
        TrainingPipeline(config_path=str(broken))

    listing = tmp_path / 'list.yaml'
    listing.write_text('- model\n- data\n')
    with pytest.raises(ConfigError):
        TrainingPipeline(config_path=str(listing))


def test_save_config_rejects_non_yaml_values(tmp_path):
    """Only plain Python values are written"""
    config = _small_config()
    config['model']['embedding_dim'] = np.int64(4)
    path = tmp_path / 'config.yaml'
    with pytest.raises(ConfigError):
        TrainingPipeline.save_config(config, str(path))
    assert not path.exists()


def test_invalid_configs():
    """Broken configs fail early"""
    with pytest.raises(ConfigError):
        TrainingPipeline()
    with pytest.raises(ConfigError):
        TrainingPipeline(config={'data': {}})

    config = _small_config()
    config['data']['split'] = 'stratified'
    with pytest.raises(ConfigError):
        TrainingPipeline(config=config)

    pipeline = TrainingPipeline(config=_small_config(hidden_units=3))
    with pytest.raises(ConfigError):
        pipeline.build_hyperparameters(num_items=10)


@pytest.mark.parametrize('split', ['user', 'sequence', 'random'])
def test_split_follows_config(split):
    """Configured splitter partitions the interactions"""
    config = _small_config()
    config['data']['split'] = split
    data = make_cyclic_interactions(num_users=12)
    train, test = TrainingPipeline(config=config).split(data)
    assert len(train) + len(test) == len(data)


def test_train_without_tracking():
    """Training outside an MLflow run returns the model and metrics"""
    data = make_cyclic_interactions(num_users=12)
    pipeline = TrainingPipeline(config=_small_config())
    model, metrics = pipeline.train(data)
    assert isinstance(model, ImplicitSequenceModel)
    assert set(metrics) == {'train_loss', 'train_mrr', 'test_mrr'}
    assert 0.0 < metrics['train_mrr'] <= 1.0
    assert 0.0 < metrics['test_mrr'] <= 1.0


def test_train_without_test_users():
    """An empty test split only skips the test metric"""
    config = _small_config(model_type='ewma')
    config['data']['test_fraction'] = 0.0
    data = make_cyclic_interactions(num_users=6)
    _, metrics = TrainingPipeline(config=config).train(data)
    assert 'test_mrr' not in metrics
    assert 'train_mrr' in metrics


def test_param_combinations():
    """Grid search expands the cartesian product of the sweep"""
    combos = TrainingPipeline._generate_param_combinations({
        'model.loss': ['warp', 'bpr'],
        'model.embedding_dim': [4, 8, 16],
    })
    assert len(combos) == 6
    assert {'model.loss': 'bpr', 'model.embedding_dim': 16} in combos


def test_experiment_config_overrides():
    """Grid overrides are applied to a copy of the config"""
    pipeline = TrainingPipeline(config=_small_config())
    config = pipeline._experiment_config({'model.loss': 'hinge'})
    assert config['model']['loss'] == 'hinge'
    assert pipeline.cfg_raw['model']['loss'] == 'warp'
    with pytest.raises(ConfigError):
        pipeline._experiment_config({'loss': 'hinge'})


def test_run_and_grid_search_with_local_tracking(tmp_path):
    """Runs are logged to a local MLflow store"""
    config = _small_config()
    config['mlflow']['tracking_uri'] = f"sqlite:///{tmp_path / 'mlflow.db'}"
    config['mlflow']['experiment_name'] = 'pysbr_test'
    config['sweep'] = {'model.model_type': ['lstm', 'ewma']}
    data = make_cyclic_interactions(num_users=12)
    pipeline = TrainingPipeline(config=config)

    run_ids = pipeline.run(data)
    assert len(run_ids) == 1
    run = mlflow.get_run(run_ids[0])
    assert 'train_mrr' in run.data.metrics
    assert 'train_loss' in run.data.metrics
    assert run.data.params['model.loss'] == 'warp'

    results = pipeline.run(data, sweep=True)
    assert len(results) == 2
    assert all(r.startswith('SUCCESS') for r in results)
