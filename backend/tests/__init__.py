"""Backend test suite for the book search worker and query pipeline.

Run tests with:
    pytest                          # Run all tests
    pytest -m unit                  # Run only unit tests
    pytest tests/test_retry.py      # One module
"""
