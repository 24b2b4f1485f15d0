"""
FIELDVOICE Test Suite

Test Organization:
    tests/
    ├── __init__.py          # This file
    ├── conftest.py          # Shared pytest fixtures
    ├── fixtures/            # Scripted providers, executor, audio stream fakes
    ├── unit/                # One module per fieldvoice module
    └── e2e/                 # Whole-pipeline voice scenarios

Running Tests:
    # Run all tests
    pytest tests/

    # Run only the end-to-end scenarios
    pytest tests/e2e/ -m e2e

Requirements:
    pip install -e ".[test]"
"""
