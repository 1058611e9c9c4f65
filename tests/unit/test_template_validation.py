"""Unit tests for template document validation."""

import copy

import pytest

from peerflow.config import get_settings
from peerflow.exceptions import TemplateValidationError
from peerflow.models import ActivityKind, Stage
from peerflow.registry import template_from_document
from peerflow.template_loader import (
    definition_hash,
    parse_template,
    read_template_files,
    validate_template,
)
from tests.factories import make_edge, make_stage, make_template_data


def _errors(data: dict) -> list[str]:
    return validate_template(parse_template(data))


class TestShippedTemplates:
    def test_all_shipped_templates_are_valid(self):
        documents = read_template_files(get_settings().template_dir)
        ids = {data["id"] for data in documents}
        assert ids == {"quick_review_v1", "thorough_review_v1", "journal_club_standard_v1"}
        for data in documents:
            assert _errors(data) == [], data["id"]

    def test_quick_review_shape(self):
        documents = {d["id"]: d for d in read_template_files(get_settings().template_dir)}
        template = template_from_document(parse_template(documents["quick_review_v1"]))
        assert template.participant_count == 3
        assert template.total_token_pool == 10
        assert template.insurance_tokens == 1
        assert template.rank_to_tokens == (4, 3, 2)
        assert template.initial_stage == Stage.posted
        assert template.automatic is True

    def test_thorough_review_has_author_response(self):
        documents = {d["id"]: d for d in read_template_files(get_settings().template_dir)}
        template = template_from_document(parse_template(documents["thorough_review_v1"]))
        assert template.rank_to_tokens == (7, 5, 4, 2)
        assert template.edge(Stage.review_round_1, Stage.author_response_round_1) is not None
        assert template.edge(Stage.author_response_round_1, Stage.review_round_2) is not None

    def test_journal_club_is_manual(self):
        documents = {d["id"]: d for d in read_template_files(get_settings().template_dir)}
        template = template_from_document(parse_template(documents["journal_club_standard_v1"]))
        assert template.activity_kind == ActivityKind.journal_club
        assert template.automatic is False
        assert template.outgoing(Stage.jc_created, automatic_only=True) == ()


class TestRankTable:
    def test_valid_factory_template(self):
        assert _errors(make_template_data()) == []

    def test_increasing_rank_table_rejected(self):
        data = make_template_data(rank_to_tokens=[4, 5, 2])
        assert any("non-increasing" in e for e in _errors(data))

    def test_pool_must_match_ranks_plus_insurance(self):
        data = make_template_data()
        data["total_token_pool"] += 1
        assert any("must equal total_token_pool" in e for e in _errors(data))

    def test_equal_adjacent_ranks_allowed(self):
        assert _errors(make_template_data(rank_to_tokens=[5, 5, 2])) == []


class TestStageGraph:
    def test_requires_exactly_one_initial_stage(self):
        data = make_template_data()
        data["stages"][1]["is_initial"] = True
        assert any("exactly one initial stage" in e for e in _errors(data))

    def test_edges_must_reference_declared_stages(self):
        data = make_template_data()
        data["edges"].append(make_edge("review_round_1", "review_round_2"))
        errors = _errors(data)
        assert any("to_stage is not a declared stage" in e for e in errors)

    def test_terminal_stage_has_no_outgoing_edges(self):
        data = make_template_data()
        data["edges"].append(make_edge("completed", "posted"))
        assert any("terminal stages have no outgoing edges" in e for e in _errors(data))

    def test_awarding_stage_must_be_terminal(self):
        data = make_template_data()
        data["stages"][4]["awards_on_entry"] = True
        assert any("must be terminal" in e for e in _errors(data))

    def test_duplicate_edge(self):
        data = make_template_data()
        data["edges"].append(copy.deepcopy(data["edges"][0]))
        assert any("declared more than once" in e for e in _errors(data))

    def test_unknown_predicate_rejected_at_load(self):
        data = make_template_data()
        data["edges"][0]["condition"] = {"type": "phase_of_moon", "config": {}}
        assert any("unknown predicate 'phase_of_moon'" in e for e in _errors(data))

    def test_malformed_condition_rejected(self):
        data = make_template_data()
        data["edges"][0]["condition"] = {"op": "AND", "conditions": []}
        assert any("non-empty" in e for e in _errors(data))

    def test_duplicate_stage(self):
        data = make_template_data()
        data["stages"].append(make_stage("review_round_1", 9))
        assert any("duplicate stages" in e for e in _errors(data))


class TestParseTemplate:
    def test_unknown_stage_name(self):
        data = make_template_data()
        data["stages"][1]["stage"] = "peer_grooming"
        with pytest.raises(TemplateValidationError) as exc_info:
            parse_template(data)
        assert exc_info.value.template_id == "three_reviewer_v1"
        assert exc_info.value.errors

    def test_negative_insurance(self):
        data = make_template_data()
        data["insurance_tokens"] = -1
        with pytest.raises(TemplateValidationError):
            parse_template(data)

    def test_default_award_categories(self):
        data = make_template_data()
        del data["award_categories"]
        doc = parse_template(data)
        assert doc.award_categories["challenger"].author_points == 75

    def test_definition_hash_is_stable(self):
        first = definition_hash(parse_template(make_template_data()))
        second = definition_hash(parse_template(make_template_data()))
        assert first == second
        changed = definition_hash(parse_template(make_template_data(insurance_tokens=5)))
        assert changed != first
