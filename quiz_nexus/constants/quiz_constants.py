"""Quiz-related constants shared across core and server layers."""

OPTION_COUNT: int = 4
OPTION_LETTERS: tuple[str, ...] = ("A", "B", "C", "D")

DEFAULT_TIME_LIMIT_SECONDS: int = 300
DEFAULT_QUIZ_TITLE: str = "Untitled Quiz"
DEFAULT_CATEGORY: str = "General"
DIFFICULTIES: tuple[str, ...] = ("Easy", "Medium", "Hard")
DEFAULT_DIFFICULTY: str = "Easy"

TIMER_TICK_INTERVAL_SECONDS: float = 1.0
PASS_THRESHOLD_PERCENT: int = 70

QUIZZES_TABLE: str = "quizzes"
RESULTS_TABLE: str = "quiz_results"

SCORE_BANDS: tuple[tuple[str, int], ...] = (
    ("90-100%", 90),
    ("80-89%", 80),
    ("70-79%", 70),
    ("60-69%", 60),
    ("<60%", 0),
)

# Per-quiz breakdown bands, lowest first. Each band runs up to the next floor.
QUIZ_SCORE_BANDS: tuple[tuple[str, int], ...] = (
    ("0-49", 0),
    ("50-69", 50),
    ("70-84", 70),
    ("85-100", 85),
)
