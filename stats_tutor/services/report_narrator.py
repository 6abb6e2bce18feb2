"""Final report: evidence summary plus a narrative from the model.

The summary is deterministic. The narrative is best-effort: any failure of
the text-generation call falls back to a short local narrative so the
report itself never fails because of the model.
"""

import logging

from stats_tutor.errors import TutorError
from stats_tutor.models.session import AssessmentState, LevelSummary, Report
from stats_tutor.services.ai_client import ai_chat
from stats_tutor.services.catalog import (
    LEVEL_ORDER,
    clusters_for_level,
    humanize_cluster,
    levels_above,
    to_display_list,
)
from stats_tutor.services.prompts import language_name, load_prompt

logger = logging.getLogger(__name__)


def _unique(items):
    seen = []
    for item in items:
        if item not in seen:
            seen.append(item)
    return seen


def stats_level(total_correct: int, total_questions: int) -> str:
    if total_correct >= 5:
        return "Advanced"
    if total_correct >= 3 and total_questions >= 4:
        return "Intermediate"
    return "Beginner"


def summarize_evidence(assessment: AssessmentState, lang: str = "en") -> Report:
    """Strengths, gaps and counts from the evidence log (no narrative yet)."""
    evidence = assessment.evidence
    strengths = _unique(e.cluster for e in evidence if e.correct)
    gaps = _unique(e.cluster for e in evidence if not e.correct)

    # Levels never reached count as gaps
    for level in levels_above(assessment.current_level):
        for cluster in clusters_for_level(level):
            if cluster not in gaps:
                gaps.append(cluster)

    total_questions = len(evidence)
    total_correct = sum(1 for e in evidence if e.correct)

    levels_summary = []
    for level in LEVEL_ORDER:
        entries = [e for e in evidence if e.level == level]
        if entries:
            levels_summary.append(LevelSummary(
                level=level,
                correct=sum(1 for e in entries if e.correct),
                total=len(entries),
            ))

    return Report(
        strengths=strengths,
        gaps=gaps,
        strengths_display=to_display_list(strengths, lang),
        gaps_display=to_display_list(gaps, lang),
        stats_level=stats_level(total_correct, total_questions),
        highest_level=assessment.current_level,
        total_questions=total_questions,
        total_correct=total_correct,
        percent=round(100 * total_correct / total_questions) if total_questions else 0,
        levels_summary=levels_summary,
    )


def local_narrative(report: Report, lang: str = "en") -> str:
    if lang == "ar":
        intro = "نتائج تقييمك جاهزة. سنعرض موجزًا مختصرًا."
        strengths = (f"نقاط قوة ظهرت: {'، '.join(report.strengths_display)}."
                     if report.strengths_display else "لا توجد نقاط قوة واضحة حتى الآن.")
        gaps = (f"تحتاج لتعزيز في: {'، '.join(report.gaps_display)}."
                if report.gaps_display else "لا توجد فجوات واضحة.")
        cta = "تحب أشرح لك هذه النقاط خطوة بخطوة الآن؟"
    else:
        intro = "Your assessment results are ready. Here's a short summary."
        strengths = (f"Strengths noticed: {', '.join(report.strengths_display)}."
                     if report.strengths_display else "No clear strengths yet.")
        gaps = (f"Areas to reinforce: {', '.join(report.gaps_display)}."
                if report.gaps_display else "No clear gaps.")
        cta = "Would you like me to explain these points step-by-step now?"
    return f"{intro}\n{strengths}\n{gaps}\n{cta}"


def build_report_messages(report: Report, assessment: AssessmentState, profile: dict,
                          lang: str) -> list[dict]:
    prompt = load_prompt("report.yaml")
    evidence_lines = "\n".join(
        f"  {i}. level={e.level}, topic=\"{humanize_cluster(e.cluster, lang)}\", correct={e.correct}"
        for i, e in enumerate(assessment.evidence, 1)
    ) or "  (none)"
    user_message = prompt["user_template"].format(
        lang_name=language_name(lang),
        strengths="; ".join(report.strengths_display),
        gaps="; ".join(report.gaps_display),
        total_correct=report.total_correct,
        total_questions=report.total_questions,
        highest_level=report.highest_level,
        evidence=evidence_lines,
        job_nature=profile.get("job_nature", ""),
        experience_years_band=profile.get("experience_years_band", ""),
        learning_reason=profile.get("learning_reason", ""),
    )
    return [
        {"role": "system", "content": prompt["system_prompt"]},
        {"role": "user", "content": user_message},
    ]


async def narrate(report: Report, assessment: AssessmentState, profile: dict,
                  lang: str = "en") -> str:
    try:
        text = await ai_chat(
            messages=build_report_messages(report, assessment, profile, lang),
            use_case="report",
            temperature=0.2,
            max_tokens=512,
        )
    except TutorError as exc:
        logger.warning("Report narrative unavailable, using local fallback: %s", exc)
        return local_narrative(report, lang)

    text = (text or "").strip()
    if not text:
        logger.warning("Empty report narrative, using local fallback")
        return local_narrative(report, lang)
    return text


async def build_report(assessment: AssessmentState, profile: dict, lang: str = "en") -> Report:
    report = summarize_evidence(assessment, lang)
    report.message = await narrate(report, assessment, profile, lang)
    return report
