"""Training pipeline for pysbr sequence recommenders."""

import itertools
import logging
import multiprocessing as mp
import traceback
from functools import partial
from typing import Any, Dict, List, Optional, Tuple

import mlflow
import torch
import yaml
from mlflow.entities import Run

from .evaluation import mrr_score
from .exceptions import ConfigError, DataError
from .hyperparameters import Hyperparameters
from .interactions import Interactions
from .model import ImplicitSequenceModel
from .splitting import sequence_based_split, train_test_split, user_based_split
from .utils import get_logger

# Suppress verbose MLflow/alembic migration logs
logging.getLogger("alembic").setLevel(logging.WARNING)
logging.getLogger("mlflow").setLevel(logging.WARNING)
logging.getLogger("mlflow.utils.environment").setLevel(logging.ERROR)

SPLITTERS = {
    'user': user_based_split,
    'sequence': sequence_based_split,
    'random': train_test_split,
}


class TrainingPipeline:
    """YAML-configured fit/evaluate loop with MLflow tracking."""

    def __init__(
        self,
        config_path: Optional[str] = None,
        config: Optional[Dict] = None
    ):
        """Initialize pipeline with config from path or dict."""
        # Load or set configuration
        if config_path is not None:
            raw_config = self._load_config(config_path)
        elif config is not None:
            raw_config = config
        else:
            raise ConfigError(
                "Must provide either config_path or config dict"
            )

        for section in ('model', 'data'):
            if not isinstance(raw_config.get(section), dict):
                raise ConfigError(f"Missing config section: {section}")

        # Store raw and flattened versions
        self.cfg_raw = raw_config
        self.cfg = self._flatten_config(raw_config)
        self.log_level = raw_config.get('training', {}).get('log_level', 1)
        self.logger = get_logger(self.log_level, self)

        split_name = self.cfg.get('data.split', 'sequence')
        if split_name not in SPLITTERS:
            available = ', '.join(SPLITTERS)
            raise ConfigError(
                f"Unknown split: {split_name}. "
                f"Available options: {available}"
            )

    @staticmethod
    def _load_config(config_path: str) -> Dict:
        """Load configuration from YAML file."""
        with open(config_path, 'r') as f:
            try:
                config = yaml.safe_load(f)
            except yaml.YAMLError as err:
                raise ConfigError(
                    f"Could not parse {config_path}: {err}"
                ) from err
        if not isinstance(config, dict):
            raise ConfigError(
                f"{config_path} must hold a mapping of config sections"
            )
        return config

    @staticmethod
    def _flatten_config(config: Dict) -> Dict:
        """Flatten sections to `section.key` entries, sweep grids excluded."""
        flat = {}
        for section, values in config.items():
            if section == 'sweep':
                continue
            if isinstance(values, dict):
                for key, val in values.items():
                    flat[f"{section}.{key}"] = val
            else:
                flat[section] = values
        return flat

    def build_hyperparameters(self, num_items: int) -> Hyperparameters:
        """Hyperparameters from the `model` section for `num_items` items."""
        model_cfg = dict(self.cfg_raw['model'])
        model_cfg['num_items'] = num_items
        return Hyperparameters.from_dict(model_cfg)

    def split(
        self,
        interactions: Interactions
    ) -> Tuple[Interactions, Interactions]:
        """Split interactions as configured in the `data` section."""
        splitter = SPLITTERS[self.cfg.get('data.split', 'sequence')]
        return splitter(
            interactions,
            random_state=self.cfg.get('data.seed', 42),
            test_fraction=self.cfg.get('data.test_fraction', 0.2),
        )

    def train(
        self,
        interactions: Interactions,
        mlflow_run: Optional[Run] = None,
        run_name: Optional[str] = None
    ) -> Tuple[ImplicitSequenceModel, Dict[str, float]]:
        """Split, fit and evaluate a single model using pipeline config."""
        # Determine run name
        if run_name is None:
            run_name = interactions.name

        # Log all config parameters to MLflow
        if mlflow_run is not None:
            mlflow.log_params(self.cfg)

        train, test = self.split(interactions)
        self.logger.info("Train: %r", train)
        self.logger.info("Test: %r", test)

        # Build model
        hyperparameters = self.build_hyperparameters(interactions.num_items)
        model = hyperparameters.build(log_level=self.log_level)

        print(f"Starting training: {run_name}", flush=True)
        metrics = {'train_loss': model.fit(train)}
        metrics['train_mrr'] = mrr_score(model, train)
        # test users are ranked from their training prefix; users moved
        # whole by the user split have no prefix
        try:
            metrics['test_mrr'] = mrr_score(model, test, history=train)
        except DataError:
            self.logger.warning("No test users to evaluate for %s", run_name)

        if mlflow_run is not None:
            mlflow.log_metrics(metrics)

        summary = ', '.join(f"{k}={v:.4f}" for k, v in metrics.items())
        print(f"Finished training: {run_name} ({summary})", flush=True)
        return model, metrics

    def run(
        self, interactions: Interactions, sweep: bool = False
    ) -> List[str]:
        """Run training with optional sweep."""
        # Set MLflow tracking and experiment
        mlflow.set_tracking_uri(self.cfg['mlflow.tracking_uri'])
        mlflow.set_experiment(
            self.cfg['mlflow.experiment_name']
        )

        # Run sweep or single training
        if sweep:
            sweep_config = self.cfg_raw.get('sweep', {})
            if not sweep_config:
                raise ConfigError("sweep config is empty")

            print("\nRunning parameter sweep...")
            results = self.run_grid_search(
                interactions,
                param_grid=sweep_config,
                mlflow_experiment_name=self.cfg.get(
                    'mlflow.experiment_name'
                ),
                base_run_name=interactions.name,
                num_processes=self.cfg.get('training.num_processes', 1)
            )
            print(
                f"\nSweep completed: {len(results)} experiments"
            )
            return results

        print("\nTraining single model...")
        with mlflow.start_run(run_name=interactions.name) as run:
            self.train(interactions, mlflow_run=run)
            print("\nTraining completed!")
            print(f"MLflow run ID: {run.info.run_id}")
            return [run.info.run_id]

    def run_grid_search(
        self,
        interactions: Interactions,
        param_grid: Dict[str, List],
        mlflow_experiment_name: Optional[str] = None,
        base_run_name: Optional[str] = None,
        num_processes: Optional[int] = None
    ) -> List[str]:
        """Run hyperparameter grid search with param combinations."""
        # Validate param grid
        if not param_grid:
            raise ConfigError(
                "param_grid cannot be empty. Provide parameter "
                "combinations for grid search."
            )

        # Set MLflow experiment
        if mlflow_experiment_name:
            mlflow.set_experiment(mlflow_experiment_name)

        # Generate all parameter combinations
        all_params = self._generate_param_combinations(param_grid)
        print(f"Running {len(all_params)} experiments in grid search")

        # Determine number of parallel processes
        total_cores = mp.cpu_count()
        if num_processes is None:
            num_processes = min(len(all_params), total_cores)
        else:
            num_processes = min(len(all_params), num_processes)

        run_single = partial(
            self._run_single_experiment,
            interactions=interactions,
            base_run_name=base_run_name or interactions.name
        )

        print("Starting experiments...", flush=True)
        results = []
        if num_processes <= 1:
            for i, params in enumerate(all_params, 1):
                results.append(run_single(params))
                print(f"[{i}/{len(all_params)}] {results[-1]}", flush=True)
        else:
            # Avoid oversubscribing cores with torch intra-op threads
            torch.set_num_threads(max(1, total_cores // num_processes))
            with mp.Pool(processes=num_processes) as pool:
                for i, result in enumerate(
                    pool.imap_unordered(run_single, all_params), 1
                ):
                    results.append(result)
                    print(
                        f"[{i}/{len(all_params)}] {result}",
                        flush=True
                    )

        # Print summary
        print("\nGrid Search Complete!")
        success_count = sum(
            1 for r in results if r.startswith("SUCCESS")
        )
        print(
            f"Success: {success_count}/{len(results)} experiments"
        )

        return results

    @staticmethod
    def _generate_param_combinations(
        param_grid: Dict[str, List]
    ) -> List[Dict[str, Any]]:
        """Generate all combinations of parameters from grid."""
        param_names = list(param_grid.keys())
        param_values = list(param_grid.values())
        return [
            dict(zip(param_names, values))
            for values in itertools.product(*param_values)
        ]

    def _experiment_config(self, params: Dict[str, Any]) -> Dict:
        """Copy of the raw config with `section.key` overrides applied."""
        config = {
            section: dict(values) if isinstance(values, dict) else values
            for section, values in self.cfg_raw.items()
        }
        for param_name, param_value in params.items():
            if '.' not in param_name:
                raise ConfigError(
                    f"Grid parameter must look like section.key, "
                    f"got {param_name}"
                )
            section, key = param_name.split('.', 1)
            config.setdefault(section, {})[key] = param_value
        return config

    def _run_single_experiment(
        self,
        params: Dict[str, Any],
        interactions: Interactions,
        base_run_name: str
    ) -> str:
        """Run a single experiment with given parameters."""
        run_name = '_'.join(
            [base_run_name]
            + [f"{k.split('.', 1)[-1]}{v}" for k, v in params.items()]
        )
        try:
            experiment_pipeline = TrainingPipeline(
                config=self._experiment_config(params)
            )
            with mlflow.start_run(run_name=run_name) as run:
                _, metrics = experiment_pipeline.train(
                    interactions, mlflow_run=run, run_name=run_name
                )
            return f"SUCCESS: {run_name} {metrics}"

        except Exception as e:  # pylint: disable=broad-except
            self.logger.error("Experiment %s failed: %s", run_name, e)
            return (
                f"FAILED: {run_name}\n"
                f"  Params: {params}\n"
                f"  Error: {str(e)}\n"
                f"  {traceback.format_exc()}"
            )

    @staticmethod
    def create_default_config() -> Dict:
        """Create a default configuration dictionary."""
        return {
            'model': {
                'model_type': 'lstm',
                'embedding_dim': 32,
                'learning_rate': 0.1,
                'l2_penalty': 0.0,
                'lstm_variant': 'normal',
                'loss': 'warp',
                'optimizer': 'adagrad',
                'num_epochs': 10,
                'num_negative_trials': 10,
                'negative_sampling': 'uniform',
                'num_threads': 1,
                'seed': 42
            },
            'training': {
                'log_level': 1,
                'num_processes': 1
            },
            'data': {
                'split': 'sequence',
                'test_fraction': 0.2,
                'seed': 42
            },
            'mlflow': {
                'experiment_name': 'pysbr_pipeline',
                'tracking_uri': 'sqlite:///mlflow.db'
            },
            'sweep': {
                'model.model_type': ['lstm', 'ewma'],
                'model.learning_rate': [0.05, 0.1],
                'model.loss': ['warp', 'bpr']
            }
        }

    @staticmethod
    def save_config(config: Dict, output_path: str):
        """Save configuration to YAML file (plain Python values only)."""
        try:
            text = yaml.safe_dump(
                config, default_flow_style=False, sort_keys=False
            )
        except yaml.YAMLError as err:
            raise ConfigError(
                f"Config cannot be saved as YAML: {err}"
            ) from err
        with open(output_path, 'w') as f:
            f.write(text)
        print(f"Configuration saved to: {output_path}")
