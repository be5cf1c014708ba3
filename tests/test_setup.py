"""Test that the project setup is working correctly."""

import polygon_netflow_tracker


def test_version() -> None:
    """Test that version is defined."""
    assert polygon_netflow_tracker.__version__ == "0.1.0"


def test_import_modules() -> None:
    """Test that all submodules can be imported."""
    from polygon_netflow_tracker import aggregator
    from polygon_netflow_tracker import ingestor
    from polygon_netflow_tracker import ledger
    from polygon_netflow_tracker import pipeline
    from polygon_netflow_tracker import storage
    from polygon_netflow_tracker import watchlist

    # Just verify imports work
    assert aggregator is not None
    assert ingestor is not None
    assert ledger is not None
    assert pipeline is not None
    assert storage is not None
    assert watchlist is not None
