"""
Simple Training Pipeline Example

Demonstrates minimal code to use TrainingPipeline.
Shows separation between data prep and model training.
Reuse same Interactions with different training configs.
"""

import mlflow
import numpy as np

from pysbr import Interactions, TrainingPipeline

# Configure MLflow to use SQLite backend
mlflow.set_tracking_uri("sqlite:///mlflow.db")


def create_synthetic_data(seed=42):
    """
    Create a synthetic dataset of users browsing item "chains".

    Every user starts at a random item and mostly moves on to the next
    item id, with an occasional random jump.

    Returns:
        Interactions object ready for training
    """
    rng = np.random.RandomState(seed)
    n_users = 500
    n_items = 200
    seq_len = 15

    user_ids, item_ids, timestamps = [], [], []
    for user in range(n_users):
        item = rng.randint(n_items)
        for t in range(seq_len):
            user_ids.append(user)
            item_ids.append(item)
            timestamps.append(t)
            jump = rng.random_sample() < 0.1
            item = rng.randint(n_items) if jump else (item + 1) % n_items

    data = Interactions(
        user_ids=np.array(user_ids),
        item_ids=np.array(item_ids),
        timestamps=np.array(timestamps),
        num_users=n_users,
        num_items=n_items,
        name='synthetic_chains',
    )
    print(f"Created synthetic dataset: {data}")
    return data


def example_1_basic_training():
    """Example 1: Basic training with default config."""
    print("="*80)
    print("Example 1: Basic Training with Default Config")
    print("="*80)

    data = create_synthetic_data()

    config = TrainingPipeline.create_default_config()
    config['model']['num_epochs'] = 5

    mlflow.set_experiment('simple_pipeline_examples')
    pipeline = TrainingPipeline(config=config)
    with mlflow.start_run(run_name='example1_basic') as run:
        model, metrics = pipeline.train(data, mlflow_run=run)
        print(f"\nMLflow run ID: {run.info.run_id}")
        print(f"Metrics: {metrics}")


def example_2_config_file():
    """Example 2: Training with YAML config file."""
    print("\n" + "="*80)
    print("Example 2: Training with YAML Config File")
    print("="*80)

    data = create_synthetic_data()

    mlflow.set_experiment('simple_pipeline_examples')
    pipeline = TrainingPipeline(
        config_path='examples/training_config.yaml'
    )
    with mlflow.start_run(run_name='example2_config') as run:
        pipeline.train(data, mlflow_run=run)
        print(f"\nMLflow run ID: {run.info.run_id}")


def example_3_custom_params():
    """Example 3: EWMA baseline with BPR loss."""
    print("\n" + "="*80)
    print("Example 3: Training with Custom Parameters")
    print("="*80)

    data = create_synthetic_data()

    config = TrainingPipeline.create_default_config()
    config['model']['model_type'] = 'ewma'
    config['model']['ewma_alpha'] = 0.3
    config['model']['loss'] = 'bpr'
    config['model']['num_epochs'] = 5
    config['data']['split'] = 'user'

    mlflow.set_experiment('simple_pipeline_examples')
    pipeline = TrainingPipeline(config=config)
    with mlflow.start_run(run_name='example3_custom') as run:
        pipeline.train(data, mlflow_run=run)
        print(f"\nMLflow run ID: {run.info.run_id}")


def example_4_grid_search():
    """Example 4: Hyperparameter grid search."""
    print("\n" + "="*80)
    print("Example 4: Hyperparameter Grid Search")
    print("="*80)

    data = create_synthetic_data()

    config = TrainingPipeline.create_default_config()
    config['model']['num_epochs'] = 3

    param_grid = {
        'model.model_type': ['lstm', 'ewma'],
        'model.learning_rate': [0.05, 0.1],
        'model.loss': ['warp', 'hinge']
    }

    pipeline = TrainingPipeline(config=config)
    results = pipeline.run_grid_search(
        data,
        param_grid=param_grid,
        mlflow_experiment_name='example4_grid_search',
        base_run_name='grid_search',
        num_processes=2
    )

    print(f"\nCompleted {len(results)} experiments")


def example_5_recommend():
    """Example 5: Use a trained model to recommend items."""
    print("\n" + "="*80)
    print("Example 5: Recommendations for a New Session")
    print("="*80)

    data = create_synthetic_data()
    config = TrainingPipeline.create_default_config()
    config['model']['num_epochs'] = 5
    model, _ = TrainingPipeline(config=config).train(data)

    history = [10, 11, 12, 13]
    print(f"History: {history}")
    print(f"Top-5 next items: {model.recommend(history, k=5).tolist()}")


if __name__ == '__main__':
    import sys

    # Map example numbers to functions
    examples = {
        1: example_1_basic_training,
        2: example_2_config_file,
        3: example_3_custom_params,
        4: example_4_grid_search,
        5: example_5_recommend
    }

    # Run specific example or default to example 1
    if len(sys.argv) > 1:
        example_num = int(sys.argv[1])
        if example_num in examples:
            examples[example_num]()
        else:
            print(f"Example {example_num} not found. Available: 1-5")
    else:
        example_1_basic_training()
