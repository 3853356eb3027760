"""Question / completion stop heuristics."""

import pytest

from engine.heuristics import find_completion, find_question, stop_reason


@pytest.mark.parametrize("text", [
    "Would you like me to add tests as well?",
    "I can refactor this. Should I continue with the API layer",
    "Which option do you prefer: A or B",
    "Please let me know the database name.",
    "What port should the server use?",
    "I confirmed the schema matches the models.",
    "Confirmation dialog added.",
    "The handler should include a timeout.",
])
def test_questions_detected(text):
    assert find_question(text)
    assert stop_reason(text).startswith("question: ")


@pytest.mark.parametrize("text", [
    "The app is ready. Run it with npm start.",
    "All files have been created.",
    "You can now open http://localhost:3000",
    "Done - run the server with `python app.py`.",
])
def test_completions_detected(text):
    assert find_completion(text)
    assert stop_reason(text).startswith("completion: ")


def test_question_wins_over_completion():
    assert stop_reason("The task is done. Would you like anything else?").startswith("question: ")


@pytest.mark.parametrize("text", [
    "Let me read the config first.",
    "Configuration loaded; abandoned branch removed.",
    "This is done-ish but I still need to write the tests.",
])
def test_ordinary_narration_does_not_stop(text):
    assert stop_reason(text) is None
