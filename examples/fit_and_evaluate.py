"""
Fit an LSTM model directly (no pipeline) and report train/test MRR.
"""

import time

from pysbr import Hyperparameters, mrr_score, user_based_split

from simple_pipeline_example import create_synthetic_data


def main():
    data = create_synthetic_data(seed=0)
    train, test = user_based_split(data, random_state=42, test_fraction=0.2)
    print(f"Train: {len(train)}, test: {len(test)}")

    model = Hyperparameters(
        num_items=data.num_items,
        embedding_dim=32,
        learning_rate=0.16,
        l2_penalty=0.0004,
        lstm_variant='normal',
        loss='warp',
        optimizer='adagrad',
        num_epochs=10,
        seed=42,
    ).build(log_level=1)

    start = time.time()
    loss = model.fit(train)
    elapsed = time.time() - start

    train_mrr = mrr_score(model, train)
    test_mrr = mrr_score(model, test)
    print(
        f"Train MRR {train_mrr:.4f} at loss {loss:.4f} and "
        f"test MRR {test_mrr:.4f} (in {elapsed:.1f}s)"
    )


if __name__ == '__main__':
    main()
