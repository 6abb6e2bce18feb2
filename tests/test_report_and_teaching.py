"""Tests for the report summary and the teaching walk."""

import asyncio
import json
from unittest.mock import AsyncMock, patch

from stats_tutor.errors import GenerationTimeout
from stats_tutor.models.session import AssessmentState, EvidenceEntry, TeachingState
from stats_tutor.services import report_narrator, teaching


def _evidence(*entries):
    return [
        EvidenceEntry(level=level, cluster=cluster, correct=correct, qid=f"{level}-{i}")
        for i, (level, cluster, correct) in enumerate(entries)
    ]


def _stopped_at_l2():
    return AssessmentState(
        current_level="L2",
        attempts=1,
        evidence=_evidence(
            ("L1", "central_tendency_foundations", True),
            ("L1", "dispersion_boxplot_foundations", False),
            ("L2", "distribution_shape_normality", False),
            ("L2", "data_quality_outliers_iqr", False),
            ("L2", "data_quality_outliers_iqr", False),
            ("L2", "distribution_shape_normality", False),
        ),
    )


class TestSummarizeEvidence:

    def test_strengths_gaps_and_unreached_levels(self):
        report = report_narrator.summarize_evidence(_stopped_at_l2())
        assert report.strengths == ["central_tendency_foundations"]
        assert report.gaps == [
            "dispersion_boxplot_foundations",
            "distribution_shape_normality",
            "data_quality_outliers_iqr",
            "correlation_bivariate_patterns",
            "non_normal_skew_kurtosis_z",
        ]
        assert report.highest_level == "L2"
        assert report.total_questions == 6
        assert report.total_correct == 1
        assert report.percent == 17
        assert report.stats_level == "Beginner"
        assert [(s.level, s.correct, s.total) for s in report.levels_summary] == [
            ("L1", 1, 2),
            ("L2", 0, 4),
        ]

    def test_display_names_follow_language(self):
        report = report_narrator.summarize_evidence(_stopped_at_l2(), "ar")
        assert report.strengths_display[0].startswith("مقاييس")

    def test_stats_level_thresholds(self):
        assert report_narrator.stats_level(5, 6) == "Advanced"
        assert report_narrator.stats_level(3, 4) == "Intermediate"
        assert report_narrator.stats_level(3, 3) == "Beginner"
        assert report_narrator.stats_level(0, 0) == "Beginner"

    def test_empty_evidence(self):
        report = report_narrator.summarize_evidence(AssessmentState())
        assert report.percent == 0
        assert report.strengths == []
        assert "correlation_bivariate_patterns" in report.gaps


class TestNarrate:

    def test_model_text_is_used(self):
        async def run():
            summary = report_narrator.summarize_evidence(_stopped_at_l2())
            with patch("stats_tutor.services.report_narrator.ai_chat",
                       AsyncMock(return_value="  Nice work on averages.  ")):
                return await report_narrator.narrate(summary, _stopped_at_l2(), {}, "en")

        assert asyncio.run(run()) == "Nice work on averages."

    def test_timeout_falls_back_to_local_narrative(self):
        async def run():
            summary = report_narrator.summarize_evidence(_stopped_at_l2())
            with patch("stats_tutor.services.report_narrator.ai_chat",
                       AsyncMock(side_effect=GenerationTimeout("slow"))):
                return await report_narrator.narrate(summary, _stopped_at_l2(), {}, "en")

        text = asyncio.run(run())
        assert text.startswith("Your assessment results are ready.")
        assert "Central Tendency" in text

    def test_empty_text_falls_back(self):
        async def run():
            summary = report_narrator.summarize_evidence(AssessmentState())
            with patch("stats_tutor.services.report_narrator.ai_chat", AsyncMock(return_value="")):
                return await report_narrator.narrate(summary, AssessmentState(), {}, "ar")

        assert asyncio.run(run()).startswith("نتائج تقييمك جاهزة")


class TestTopicsQueue:

    def test_curriculum_order_with_strength_winning(self):
        report = report_narrator.summarize_evidence(AssessmentState(
            current_level="L2",
            evidence=_evidence(
                ("L1", "dispersion_boxplot_foundations", True),
                ("L1", "central_tendency_foundations", False),
                ("L2", "data_quality_outliers_iqr", True),
                ("L2", "distribution_shape_normality", False),
                ("L2", "data_quality_outliers_iqr", False),
            ),
        ))
        queue = teaching.build_topics_queue(report)
        assert [(t.cluster, t.kind) for t in queue] == [
            ("central_tendency_foundations", "gap"),
            ("dispersion_boxplot_foundations", "strength"),
            ("distribution_shape_normality", "gap"),
            ("data_quality_outliers_iqr", "strength"),
            ("correlation_bivariate_patterns", "gap"),
            ("non_normal_skew_kurtosis_z", "gap"),
        ]
        assert queue[0].display == "Central Tendency (Mean/Median/Mode)"


class TestTeachingWalk:

    def _active(self):
        report = report_narrator.summarize_evidence(_stopped_at_l2())
        return teaching.begin(TeachingState(), report, {"sector": "Retail", "job_nature": ""}, "en")

    def test_begin_activates_and_keeps_profile_values(self):
        walk = self._active()
        assert walk.mode == "active"
        assert walk.current_topic_index == 0
        assert len(walk.topics_queue) == 6
        assert walk.profile_context == {"sector": "Retail"}

    def test_advance_past_last_topic_goes_idle(self):
        walk = self._active()
        for _ in range(len(walk.topics_queue)):
            assert walk.mode == "active"
            teaching.advance_topic(walk)
        assert walk.mode == "idle"
        assert walk.completed is True
        assert walk.current_topic() is None

    def test_transcript_is_bounded(self):
        walk = self._active()
        for i in range(12):
            teaching.append_turn(walk, "user", "x" * 5000, "topic")
        assert len(walk.transcript) == teaching.MAX_TRANSCRIPT_TURNS
        assert all(len(t.text) == teaching.MAX_TURN_CHARS for t in walk.transcript)

    def test_parse_reply(self):
        assert teaching.parse_teaching_reply(
            json.dumps({"reply": "Next up: dispersion.", "topic_complete": True})
        ) == ("Next up: dispersion.", True)
        assert teaching.parse_teaching_reply("plain text answer") == ("plain text answer", False)
        assert teaching.parse_teaching_reply(json.dumps({"topic_complete": True})) == (
            '{"topic_complete": true}', False)

    def test_reply_prompt_includes_recent_history(self):
        walk = self._active()
        teaching.append_turn(walk, "tutor", "Let's talk about the mean.", "central_tendency_foundations")
        messages = teaching.build_reply_messages(walk, "Why not the median?")
        assert messages[0]["role"] == "system"
        assert messages[1] == {"role": "assistant", "content": "Let's talk about the mean."}
        assert "Why not the median?" in messages[-1]["content"]
        assert "Dispersion" in messages[-1]["content"]
