"""Course outline decomposition into a dependency graph of generation tasks."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from coursegen.config import OrchestratorSettings
from coursegen.orchestrator.models import TaskCreate, TaskType

SECTION_PRIORITY = 0
ASSESSMENT_PRIORITY = 100
PATH_QUIZ_PRIORITY = 200
CLASS_EXAM_PRIORITY = 300
MEDIA_PRIORITY = 400


@dataclass(slots=True)
class LessonOutline:
    lesson_id: str
    title: str
    sections: tuple[str, ...] = ()


@dataclass(slots=True)
class PathOutline:
    path_id: str
    title: str
    lessons: list[LessonOutline] = field(default_factory=list)


@dataclass(slots=True)
class GenerationOptions:
    """Which optional content families to generate."""

    include_assessments: bool = True
    include_path_quizzes: bool = True
    include_class_exam: bool = True
    include_media: bool = True


@dataclass(slots=True)
class GenerationRequest:
    """One "generate a course" request with its outline."""

    user_id: str
    target_id: str
    title: str
    paths: list[PathOutline] = field(default_factory=list)
    options: GenerationOptions = field(default_factory=GenerationOptions)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], *, user_id: str | None = None) -> GenerationRequest:
        """Build a request from a JSON document, raising ``ValueError`` on bad shape."""

        owner = user_id or data.get("user_id")
        if not owner:
            raise ValueError("Generation request requires a user_id.")
        target_id = _required_str(data, "target_id", where="request")
        title = str(data.get("title") or target_id)
        raw_paths = data.get("paths")
        if not isinstance(raw_paths, list) or not raw_paths:
            raise ValueError("Generation request requires a non-empty 'paths' list.")

        paths: list[PathOutline] = []
        for path_index, raw_path in enumerate(raw_paths, start=1):
            if not isinstance(raw_path, Mapping):
                raise ValueError(f"Path #{path_index} must be an object.")
            path_id = _required_str(raw_path, "path_id", where=f"path #{path_index}")
            lessons: list[LessonOutline] = []
            for lesson_index, raw_lesson in enumerate(raw_path.get("lessons") or [], start=1):
                if not isinstance(raw_lesson, Mapping):
                    raise ValueError(f"Lesson #{lesson_index} of path {path_id} must be an object.")
                lesson_id = _required_str(
                    raw_lesson,
                    "lesson_id",
                    where=f"lesson #{lesson_index} of path {path_id}",
                )
                sections = raw_lesson.get("sections") or []
                if not isinstance(sections, list):
                    raise ValueError(f"Lesson {lesson_id} 'sections' must be a list of titles.")
                lessons.append(
                    LessonOutline(
                        lesson_id=lesson_id,
                        title=str(raw_lesson.get("title") or lesson_id),
                        sections=tuple(str(section) for section in sections),
                    ),
                )
            paths.append(
                PathOutline(
                    path_id=path_id,
                    title=str(raw_path.get("title") or path_id),
                    lessons=lessons,
                ),
            )

        raw_options = data.get("options") or {}
        if not isinstance(raw_options, Mapping):
            raise ValueError("Generation request 'options' must be an object.")
        defaults = GenerationOptions()
        options = GenerationOptions(
            include_assessments=bool(
                raw_options.get("include_assessments", defaults.include_assessments),
            ),
            include_path_quizzes=bool(
                raw_options.get("include_path_quizzes", defaults.include_path_quizzes),
            ),
            include_class_exam=bool(
                raw_options.get("include_class_exam", defaults.include_class_exam),
            ),
            include_media=bool(raw_options.get("include_media", defaults.include_media)),
        )
        return cls(
            user_id=str(owner),
            target_id=target_id,
            title=title,
            paths=paths,
            options=options,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "target_id": self.target_id,
            "title": self.title,
            "paths": [
                {
                    "path_id": path.path_id,
                    "title": path.title,
                    "lessons": [
                        {
                            "lesson_id": lesson.lesson_id,
                            "title": lesson.title,
                            "sections": list(lesson.sections),
                        }
                        for lesson in path.lessons
                    ],
                }
                for path in self.paths
            ],
            "options": {
                "include_assessments": self.options.include_assessments,
                "include_path_quizzes": self.options.include_path_quizzes,
                "include_class_exam": self.options.include_class_exam,
                "include_media": self.options.include_media,
            },
        }


def plan_generation_tasks(
    request: GenerationRequest,
    *,
    settings: OrchestratorSettings | None = None,
) -> list[TaskCreate]:
    """Expand the outline into tasks in generation order.

    Lesson assessments wait for the lesson's sections, path quizzes wait for the
    path's lesson assessments, and the class exam waits for every path quiz (or for
    every lesson assessment when quizzes are disabled).
    """

    settings = settings or OrchestratorSettings()
    options = request.options
    tasks: list[TaskCreate] = []
    media: list[TaskCreate] = []
    assessment_keys: list[str] = []
    quiz_keys: list[str] = []

    def _task(  # noqa: PLR0913
        *,
        key: str,
        task_type: TaskType,
        title: str,
        group: str,
        priority: int,
        dependencies: list[str] | None = None,
        payload: dict[str, Any],
    ) -> TaskCreate:
        return TaskCreate(
            task_key=key,
            task_type=task_type.value,
            title=title,
            group_key=group,
            dependencies=tuple(dependencies or ()),
            priority=priority,
            max_retry_count=settings.max_retries_for(task_type.value),
            timeout_seconds=settings.timeout_for(task_type.value),
            input_payload={
                "course_title": request.title,
                "target_id": request.target_id,
                **payload,
            },
        )

    for path in request.paths:
        path_assessment_keys: list[str] = []
        for lesson in path.lessons:
            lesson_payload = {
                "path_id": path.path_id,
                "path_title": path.title,
                "lesson_id": lesson.lesson_id,
                "lesson_title": lesson.title,
            }
            section_keys: list[str] = []
            for index, section_title in enumerate(lesson.sections):
                key = f"section-{lesson.lesson_id}-{index}"
                section_keys.append(key)
                tasks.append(
                    _task(
                        key=key,
                        task_type=TaskType.LESSON_SECTION,
                        title=f"{lesson.title}: {section_title}",
                        group=lesson.lesson_id,
                        priority=SECTION_PRIORITY,
                        payload={
                            **lesson_payload,
                            "section_index": index,
                            "section_title": section_title,
                        },
                    ),
                )
            if options.include_assessments:
                key = f"assessment-{lesson.lesson_id}"
                path_assessment_keys.append(key)
                tasks.append(
                    _task(
                        key=key,
                        task_type=TaskType.LESSON_ASSESSMENT,
                        title=f"Assessment: {lesson.title}",
                        group=lesson.lesson_id,
                        priority=ASSESSMENT_PRIORITY,
                        dependencies=section_keys,
                        payload=lesson_payload,
                    ),
                )
            if options.include_media:
                media.append(
                    _task(
                        key=f"mindmap-{lesson.lesson_id}",
                        task_type=TaskType.LESSON_MIND_MAP,
                        title=f"Mind map: {lesson.title}",
                        group=lesson.lesson_id,
                        priority=MEDIA_PRIORITY,
                        dependencies=section_keys,
                        payload=lesson_payload,
                    ),
                )
                media.append(
                    _task(
                        key=f"brainbytes-{lesson.lesson_id}",
                        task_type=TaskType.LESSON_BRAINBYTES,
                        title=f"BrainBytes: {lesson.title}",
                        group=lesson.lesson_id,
                        priority=MEDIA_PRIORITY,
                        dependencies=section_keys,
                        payload=lesson_payload,
                    ),
                )
        assessment_keys.extend(path_assessment_keys)
        if options.include_path_quizzes and path_assessment_keys:
            key = f"quiz-{path.path_id}"
            quiz_keys.append(key)
            tasks.append(
                _task(
                    key=key,
                    task_type=TaskType.PATH_QUIZ,
                    title=f"Quiz: {path.title}",
                    group=path.path_id,
                    priority=PATH_QUIZ_PRIORITY,
                    dependencies=path_assessment_keys,
                    payload={"path_id": path.path_id, "path_title": path.title},
                ),
            )

    exam_dependencies = quiz_keys or assessment_keys
    if options.include_class_exam and exam_dependencies:
        tasks.append(
            _task(
                key=f"exam-{request.target_id}",
                task_type=TaskType.CLASS_EXAM,
                title=f"Final exam: {request.title}",
                group=request.target_id,
                priority=CLASS_EXAM_PRIORITY,
                dependencies=exam_dependencies,
                payload={},
            ),
        )
    tasks.extend(media)
    return tasks


def _required_str(data: Mapping[str, Any], key: str, *, where: str) -> str:
    value = data.get(key)
    if value is None or not str(value).strip():
        raise ValueError(f"Missing '{key}' in {where}.")
    return str(value).strip()
