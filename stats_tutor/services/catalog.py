"""Curriculum levels, topic display names and the intake question catalog."""

import re

LEVEL_ORDER = ["L1", "L2", "L3"]

LEVELS = {
    "L1": {"clusters": ["central_tendency_foundations", "dispersion_boxplot_foundations"]},
    "L2": {"clusters": ["distribution_shape_normality", "data_quality_outliers_iqr"]},
    "L3": {"clusters": ["correlation_bivariate_patterns", "non_normal_skew_kurtosis_z"]},
}

TOPIC_DISPLAY = {
    "en": {
        "central_tendency_foundations": "Central Tendency (Mean/Median/Mode)",
        "dispersion_boxplot_foundations": "Dispersion & Box Plot (Range/Variance/SD)",
        "distribution_shape_normality": "Distribution Shape & Normality",
        "data_quality_outliers_iqr": "Data Quality & Outliers (IQR, LB/UB)",
        "correlation_bivariate_patterns": "Correlation & Bivariate Patterns",
        "non_normal_skew_kurtosis_z": "Non-Normal Data (Skewness/Kurtosis/Z-Scores)",
    },
    "ar": {
        "central_tendency_foundations": "مقاييس النزعة المركزية (المتوسط/الوسيط/المنوال)",
        "dispersion_boxplot_foundations": "التشتت ومخطط الصندوق (المدى/التباين/الانحراف المعياري)",
        "distribution_shape_normality": "شكل التوزيع (Distribution Shape & Normality)",
        "data_quality_outliers_iqr": "جودة البيانات والقيم الشاذة (IQR, LB/UB)",
        "correlation_bivariate_patterns": "الارتباط والأنماط الثنائية (Correlation & Bivariate Patterns)",
        "non_normal_skew_kurtosis_z": "البيانات غير الطبيعية (Skewness/Kurtosis/Z-Scores)",
    },
}


def clusters_for_level(level: str) -> list[str]:
    return list(LEVELS.get(level, {}).get("clusters", []))


def curriculum_order() -> list[str]:
    """Every cluster, L1 first."""
    return [c for level in LEVEL_ORDER for c in clusters_for_level(level)]


def levels_above(level: str) -> list[str]:
    if level not in LEVEL_ORDER:
        return []
    return LEVEL_ORDER[LEVEL_ORDER.index(level) + 1:]


def humanize_cluster(cluster_key: str, lang: str = "en") -> str:
    table = TOPIC_DISPLAY["ar" if lang == "ar" else "en"]
    return table.get(cluster_key, cluster_key)


def to_display_list(cluster_keys: list[str] | None, lang: str = "en") -> list[str]:
    return [humanize_cluster(k, lang) for k in (cluster_keys or [])]


# ── Intake ────────────────────────────────────────────────────────────

INTAKE_ORDER = [
    "name_full",
    "email",
    "phone_number",
    "country",
    "age_band",
    "job_nature",
    "experience_years_band",
    "job_title_exact",
    "sector",
    "learning_reason",
]

# Fields forwarded to the question, report and teaching prompts
PROFILE_FIELDS = [
    "job_nature",
    "experience_years_band",
    "job_title_exact",
    "sector",
    "learning_reason",
]

INTAKE_OPENING = {
    "en": "Hi 👋 Before we start, I'll need a few quick details so I can tailor the questions "
          "to your experience and goals. We'll go step by step.",
    "ar": "أهلاً 👋 قبل ما نبدأ، هحتاج منك بعض التفاصيل البسيطة علشان نخصّص الاسئلة حسب خبرتك وهدفك. "
          "هنكملها خطوة بخطوة",
}

INTAKE_DONE = {
    "en": "Great! I now have a clearer picture of you. We'll start the assessment now. "
          "There's no pass or fail, the goal is to gauge your level accurately so we can "
          "give you a suitable plan.",
    "ar": "تمام! كده عندي صورة أوضح عنك. هنبدأ أسئلة التقييم دلوقتي. الهدف مش نجاح ورسوب "
          "الهدف نفهم مستواك بدقة علشان نطلع لك خطة مناسبة",
}

INTAKE_CATALOG = {
    "name_full": {
        "type": "text",
        "prompt": {"en": "What's your full name?", "ar": "ممكن تكتب اسمك الكامل؟"},
        "validation_error": {"en": "Please enter your full name.", "ar": "من فضلك اكتب اسمك كامل."},
    },
    "email": {
        "type": "text",
        "prompt": {"en": "Could you enter your email address?", "ar": "ممكن تدخل بريدك الإلكتروني؟"},
        "validation_error": {
            "en": "That email doesn't look valid. Please try again.",
            "ar": "البريد الالكتروني مش صحيح ممكن تكتبه مرة تانيه",
        },
    },
    "phone_number": {
        "type": "text",
        "prompt": {"en": "What's your mobile number?", "ar": "رقم موبايلك كام؟"},
        "validation_error": {
            "en": "Phone number isn't valid. Digits, spaces and an optional + are allowed.",
            "ar": "رقم الموبايل مش واضح. مسموح أرقام ومسافات و+",
        },
    },
    "country": {
        "type": "country",
        "prompt": {"en": "Which country are you based in?", "ar": "من أي دولة بتكلّمنا؟"},
    },
    "age_band": {
        "type": "chips",
        "prompt": {"en": "Pick your age range:", "ar": "اختار فئتك العمرية:"},
        "options": {
            "en": ["18–24", "25–34", "35–44", "45–54", "55+"],
            "ar": ["18–24", "25–34", "35–44", "45–54", "55+"],
        },
    },
    "job_nature": {
        "type": "chips",
        "prompt": {
            "en": "Choose your department or nature of work:",
            "ar": "اختار طبيعة عملك او القسم الذي تعمل به:",
        },
        "options": {
            "en": ["Accounting/Finance", "Sales", "Marketing", "Operations", "HR", "IT/Data",
                   "Customer Support", "Product/Engineering", "Supply Chain/Logistics",
                   "Freelance/Consulting", "Other"],
            "ar": ["المالية/المحاسبة", "المبيعات", "التسويق", "العمليات", "الموارد البشرية",
                   "تقنية المعلومات/البيانات", "خدمة العملاء", "سلسلة الإمداد/اللوجستيات",
                   "عمل حر/استشارات", "أخرى"],
        },
    },
    "experience_years_band": {
        "type": "chips",
        "prompt": {"en": "How many years of experience do you have?", "ar": "عندك كام سنة خبرة ؟"},
        "options": {
            "en": ["<1y", "1–2y", "3–5y", "6–9y", "10–14y", "15y+"],
            "ar": ["أقل من سنة", "1–2 سنوات", "3–5 سنوات", "6–9 سنوات", "10–14 سنة", "15+ سنة"],
        },
    },
    "job_title_exact": {
        "type": "text",
        "prompt": {"en": "Type your exact job title:", "ar": "اكتب مسماك الوظيفي بشكل صحيح تماما"},
    },
    "sector": {
        "type": "chips",
        "prompt": {"en": "Choose your industry/sector:", "ar": "اختار قطاع شغلك:"},
        "options": {
            "en": ["Real Estate", "Retail/E-commerce", "Banking/Finance", "Telecom", "Healthcare",
                   "Education", "Manufacturing", "Media/Advertising", "Travel/Hospitality",
                   "Government/Public", "Technology/Software", "Other"],
            "ar": ["العقارات", "التجزئة/التجارة الإلكترونية", "البنوك/المالية", "الاتصالات",
                   "الرعاية الصحية", "التعليم", "التصنيع", "الإعلام/الإعلان", "السفر/الضيافة",
                   "الحكومي/العام", "التقنية/البرمجيات", "أخرى"],
        },
    },
    "learning_reason": {
        "type": "chips",
        "prompt": {"en": "Pick your main learning reason:", "ar": "اختار سبب التعلّم الأساسي:"},
        "options": {
            "en": ["Career shift", "Promotion", "Skill refresh", "Academic"],
            "ar": ["تغيير مسار", "ترقية", "تحديث مهارة", "أكاديمي"],
        },
    },
}

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_PHONE_RE = re.compile(r"^\+?\d{7,15}$")


def validate_intake_input(step_key: str, value) -> bool:
    """Light per-field checks; anything else only needs to be non-blank."""
    if value is None:
        return False
    value = str(value)
    if step_key == "name_full":
        return len(value.split()) >= 2
    if step_key == "email":
        return bool(_EMAIL_RE.match(value.strip()))
    if step_key == "phone_number":
        cleaned = re.sub(r"[\s\-()]", "", value)
        return bool(_PHONE_RE.match(cleaned))
    return bool(value.strip())


def next_intake_index(intake: dict | None, start: int = 0) -> int:
    """Index of the first unanswered intake step at or after ``start``.

    Returns ``len(INTAKE_ORDER)`` when every remaining step has an answer.
    """
    intake = intake or {}
    for index in range(start, len(INTAKE_ORDER)):
        if not str(intake.get(INTAKE_ORDER[index], "") or "").strip():
            return index
    return len(INTAKE_ORDER)


def intake_validation_message(step_key: str, lang: str) -> str:
    step = INTAKE_CATALOG.get(step_key, {})
    message = step.get("validation_error", {}).get(lang)
    if message:
        return message
    return "يرجى إدخال إجابة صحيحة" if lang == "ar" else "Please enter a valid answer"


def profile_from_intake(intake: dict | None) -> dict[str, str]:
    intake = intake or {}
    return {field: str(intake.get(field, "") or "") for field in PROFILE_FIELDS}
