"""Test data factories for the progression engine."""

from tests.factories.activity_factory import (
    make_allocation,
    make_review_content,
    make_user_id,
    make_users,
)
from tests.factories.template_factory import (
    TEST_TEMPLATES,
    make_edge,
    make_stage,
    make_template_data,
)

__all__ = [
    "TEST_TEMPLATES",
    "make_allocation",
    "make_edge",
    "make_review_content",
    "make_stage",
    "make_template_data",
    "make_user_id",
    "make_users",
]
