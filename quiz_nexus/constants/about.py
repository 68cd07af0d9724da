"""Static metadata describing Quiz Nexus."""

APP_NAME = "Quiz Nexus"
APP_VERSION = "0.1.0"
APP_LICENSE = "MIT License"
APP_ABOUT_TEXT = (
    "Quiz Nexus runs timed multiple-choice quizzes. Administrators author and publish "
    "quizzes, users take them against the clock, and both roles review aggregated results."
)
