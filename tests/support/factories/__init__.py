# Data factories for test data generation

from tests.support.factories.batch_factory import (
    create_batch,
    create_row,
    make_row_spec,
    make_row_specs,
)

__all__ = [
    "create_batch",
    "create_row",
    "make_row_spec",
    "make_row_specs",
]
