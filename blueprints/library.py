"""Topics, notes, questions and practice sessions.

Each write checks the owner's plan quota first, performs the write through
hybrid storage (remote, or local + queue when offline) and then records the
usage.
"""

from __future__ import annotations

import logging
from pathlib import Path

from flask import Blueprint, jsonify, request
from flask_login import login_required

from extensions import get_services
from helpers import current_owner, json_body

logger = logging.getLogger(__name__)

bp = Blueprint("library", __name__, url_prefix="/api")

ALLOWED_EXTENSIONS = {".pdf", ".png", ".jpg", ".jpeg", ".txt", ".md"}

# Magic byte signatures for binary uploads; text formats are not checked
_MAGIC_BYTES = {
    ".pdf": b"%PDF",
    ".png": b"\x89PNG",
    ".jpg": b"\xff\xd8\xff",
    ".jpeg": b"\xff\xd8\xff",
}


def _header_matches(data: bytes, ext: str) -> bool:
    expected = _MAGIC_BYTES.get(ext)
    return expected is None or data.startswith(expected)


def _owned_topic_or_404(topic_id: str):
    topic = get_services().storage.get_topic(current_owner(), topic_id)
    if topic is None:
        return None, (jsonify({"error": "Topic not found"}), 404)
    return topic, None


@bp.route("/topics")
@login_required
def list_topics():
    subject_id = request.args.get("subjectId")
    topics = get_services().storage.get_topics(current_owner(), subject_id)
    return jsonify({"topics": topics})


@bp.route("/topics", methods=["POST"])
@login_required
def create_topic():
    body = json_body()
    name = (body.get("name") or "").strip()
    if not name:
        return jsonify({"error": "Topic name is required"}), 400

    svc = get_services()
    owner = current_owner()
    subject_id = body.get("subjectId")
    svc.usage.check_topic_limit(owner, subject_id)
    topic = svc.storage.create_topic(owner, subject_id, name, body.get("description"))
    svc.usage.increment_topic_usage(owner)
    return jsonify(topic), 201


@bp.route("/topics/<topic_id>", methods=["DELETE"])
@login_required
def delete_topic(topic_id: str):
    _, error = _owned_topic_or_404(topic_id)
    if error:
        return error
    get_services().storage.delete("topics", topic_id, current_owner())
    return jsonify({"success": True})


@bp.route("/topics/<topic_id>/questions", methods=["POST"])
@login_required
def add_questions(topic_id: str):
    _, error = _owned_topic_or_404(topic_id)
    if error:
        return error
    items = json_body().get("questions") or []
    if not isinstance(items, list) or not items or not all(
        isinstance(q, dict) and q.get("question") for q in items
    ):
        return jsonify({"error": "questions must be a non-empty list of {question, ...}"}), 400

    svc = get_services()
    owner = current_owner()
    svc.usage.check_question_limit(owner, count=len(items))
    saved = [
        svc.storage.create_question(
            owner, topic_id, q["question"],
            answer=q.get("answer"),
            options=q.get("options"),
            correct_index=q.get("correctIndex"),
            explanation=q.get("explanation"),
            type=q.get("type", "multiple_choice"),
        )
        for q in items
    ]
    svc.usage.increment_question_usage(owner, len(saved))
    return jsonify({"questions": saved}), 201


@bp.route("/topics/<topic_id>/notes", methods=["POST"])
@login_required
def upload_note(topic_id: str):
    _, error = _owned_topic_or_404(topic_id)
    if error:
        return error
    if "file" not in request.files:
        return jsonify({"error": "No file provided"}), 400
    file = request.files["file"]
    if not file.filename:
        return jsonify({"error": "No filename provided"}), 400
    ext = Path(file.filename).suffix.lower()
    if ext not in ALLOWED_EXTENSIONS:
        return jsonify({"error": "Supported formats: PDF, PNG, JPG, TXT, MD"}), 400
    data = file.read()
    if not _header_matches(data, ext):
        return jsonify({"error": "File content does not match its extension."}), 400

    svc = get_services()
    owner = current_owner()
    svc.usage.check_storage_limit(owner, file_size=len(data))

    note = svc.storage.create_note(
        owner, topic_id, content=request.form.get("content"), original_filename=file.filename,
    )
    stored = svc.storage.upload_file(
        owner, topic_id, data, file.filename, content_type=file.mimetype, note_id=note["id"],
    )
    svc.usage.increment_storage_usage(owner, len(data))
    logger.info("Stored note %s (%d bytes, local=%s)", note["id"], len(data), stored["is_local"])
    return jsonify({"note": {**note, "file_url": stored["file_url"]}, "file": stored}), 201


@bp.route("/practice/sessions", methods=["POST"])
@login_required
def record_session():
    body = json_body()
    answers = body.get("answers") or []
    if not isinstance(answers, list):
        return jsonify({"error": "answers must be a list"}), 400
    topic_id = body.get("topicId")
    if topic_id:
        _, error = _owned_topic_or_404(topic_id)
        if error:
            return error
    session = get_services().storage.record_practice_session(current_owner(), topic_id, [
        {
            "question_id": a.get("questionId"),
            "user_answer": a.get("userAnswer"),
            "is_correct": bool(a.get("isCorrect")),
            "time_taken": a.get("timeTaken"),
        }
        for a in answers if isinstance(a, dict)
    ])
    return jsonify(session), 201
