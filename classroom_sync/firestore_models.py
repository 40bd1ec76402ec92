"""
Firestore document models using Python dataclasses.

Each model includes:
  - An `id` field for the Firestore document ID
  - A `to_dict()` instance method for serialization
  - A `from_dict(data, doc_id)` classmethod for deserialization
  - Sensible defaults for all fields

Stored field names are camelCase; attributes are snake_case. Deserialization
is forgiving: one malformed record must not block a whole feed, so invalid
timestamps fall back to "now" and missing counters to 0.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

# Submission lifecycle
AWAITING_GRADING = 'AwaitingGrading'
GRADED = 'Graded'

# Activity status, derived from the submission projection
ACTIVITY_PENDING = 'pending'
ACTIVITY_GRADED = 'graded'

# Notification origins (never persisted)
ORIGIN_PRIVATE = 'private'
ORIGIN_BROADCAST = 'broadcast'

RULE_ACTIVE = 'active'
RULE_INACTIVE = 'inactive'


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _now() -> datetime:
    return datetime.now(timezone.utc)


def parse_datetime(value) -> Optional[datetime]:
    """Convert a value to an aware UTC datetime. Accepts datetime objects,
    ISO-format strings, epoch milliseconds and Firestore
    DatetimeWithNanoseconds objects. Returns None when unparseable."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        value = value.replace("Z", "+00:00")
        try:
            parsed = datetime.fromisoformat(value)
        except (ValueError, TypeError):
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    # Firestore DatetimeWithNanoseconds is a datetime subclass, handled above
    return None


def coerce_datetime(value) -> datetime:
    """Like parse_datetime, but invalid or missing values become now."""
    return parse_datetime(value) or _now()


def _int(value, default=0) -> int:
    if isinstance(value, bool):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _number(value, default=0):
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return value


def _list(value) -> list:
    return list(value) if isinstance(value, (list, tuple)) else []


def _map(value) -> dict:
    return dict(value) if isinstance(value, dict) else {}


# ===========================================================================
# 1. User
# ===========================================================================

@dataclass
class User:
    id: Optional[str] = None
    name: str = ""
    email: str = ""
    role: str = "student"
    series: Optional[str] = None
    avatar_url: Optional[str] = None

    def is_student(self) -> bool:
        return self.role == "student"

    def is_teacher(self) -> bool:
        return self.role == "teacher"

    def is_admin(self) -> bool:
        return self.role == "admin"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "series": self.series,
            "avatarUrl": self.avatar_url,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], doc_id: Optional[str] = None) -> User:
        return cls(
            id=doc_id,
            name=data.get("name", ""),
            email=data.get("email", ""),
            role=data.get("role", "student"),
            series=data.get("series"),
            avatar_url=data.get("avatarUrl"),
        )


# ===========================================================================
# 2. Class membership
# ===========================================================================

@dataclass
class ClassStudent:
    id: str = ""
    name: str = ""
    avatar_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "avatarUrl": self.avatar_url}

    @classmethod
    def from_value(cls, value) -> ClassStudent:
        # Legacy documents store bare student ids.
        if isinstance(value, str):
            return cls(id=value)
        data = _map(value)
        return cls(id=data.get("id", ""), name=data.get("name", ""), avatar_url=data.get("avatarUrl"))


@dataclass
class ClassNotice:
    id: str = ""
    text: str = ""
    author: str = ""
    author_id: Optional[str] = None
    timestamp: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "text": self.text,
            "author": self.author,
            "authorId": self.author_id,
            "timestamp": self.timestamp or _now(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> ClassNotice:
        return cls(
            id=str(data.get("id", "")),
            text=data.get("text", ""),
            author=data.get("author", ""),
            author_id=data.get("authorId"),
            timestamp=coerce_datetime(data.get("timestamp")),
        )


@dataclass
class SchoolClass:
    """A class document. The studentIds / teachers arrays are the membership
    sets; the *Count fields are denormalized, display-only counters."""
    id: Optional[str] = None
    name: str = ""
    code: str = ""
    teacher_id: Optional[str] = None
    teachers: List[str] = field(default_factory=list)
    subjects: Dict[str, str] = field(default_factory=dict)
    teacher_names: Dict[str, str] = field(default_factory=dict)
    student_ids: List[str] = field(default_factory=list)
    students: List[ClassStudent] = field(default_factory=list)
    notices: List[ClassNotice] = field(default_factory=list)
    student_count: int = 0
    activity_count: int = 0
    module_count: int = 0
    notice_count: int = 0
    created_at: Optional[datetime] = None

    # Client-side only
    activities: List["Activity"] = field(default_factory=list)
    is_fully_loaded: bool = False

    def has_student(self, user_id: str) -> bool:
        if user_id in self.student_ids:
            return True
        return any(s.id == user_id for s in self.students)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "code": self.code,
            "teacherId": self.teacher_id,
            "teachers": list(self.teachers),
            "subjects": dict(self.subjects),
            "teacherNames": dict(self.teacher_names),
            "studentIds": list(self.student_ids),
            "students": [s.to_dict() for s in self.students],
            "notices": [n.to_dict() for n in self.notices],
            "studentCount": self.student_count,
            "activityCount": self.activity_count,
            "moduleCount": self.module_count,
            "noticeCount": self.notice_count,
            "createdAt": self.created_at or _now(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], doc_id: Optional[str] = None) -> SchoolClass:
        return cls(
            id=doc_id,
            name=data.get("name", ""),
            code=data.get("code", ""),
            teacher_id=data.get("teacherId"),
            teachers=_list(data.get("teachers")),
            subjects=_map(data.get("subjects")),
            teacher_names=_map(data.get("teacherNames")),
            student_ids=_list(data.get("studentIds")),
            students=[ClassStudent.from_value(s) for s in _list(data.get("students"))],
            notices=[ClassNotice.from_dict(n) for n in _list(data.get("notices")) if isinstance(n, dict)],
            student_count=_int(data.get("studentCount")),
            activity_count=_int(data.get("activityCount")),
            module_count=_int(data.get("moduleCount")),
            notice_count=_int(data.get("noticeCount")),
            created_at=parse_datetime(data.get("createdAt")),
        )


# ===========================================================================
# 3. Activities and submissions
# ===========================================================================

@dataclass
class Submission:
    student_id: str = ""
    student_name: str = ""
    content: str = ""
    status: str = AWAITING_GRADING
    grade: Optional[float] = None
    feedback: Optional[str] = None
    submitted_at: Optional[datetime] = None
    graded_at: Optional[datetime] = None

    @property
    def is_graded(self) -> bool:
        return self.status == GRADED

    def grade_display(self, points) -> str:
        if not self.is_graded or self.grade is None:
            return "-"
        return f"{self.grade:g}/{points:g}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "studentId": self.student_id,
            "studentName": self.student_name,
            "content": self.content,
            "status": self.status,
            "grade": self.grade,
            "feedback": self.feedback,
            "submittedAt": self.submitted_at or _now(),
            "gradedAt": self.graded_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], doc_id: Optional[str] = None) -> Submission:
        grade = data.get("grade")
        return cls(
            student_id=data.get("studentId") or doc_id or "",
            student_name=data.get("studentName", ""),
            content=data.get("content", ""),
            status=data.get("status", AWAITING_GRADING),
            grade=grade if isinstance(grade, (int, float)) and not isinstance(grade, bool) else None,
            feedback=data.get("feedback"),
            submitted_at=coerce_datetime(data.get("submittedAt")),
            graded_at=parse_datetime(data.get("gradedAt")),
        )


@dataclass
class Activity:
    id: Optional[str] = None
    title: str = ""
    description: str = ""
    type: str = "text"
    class_id: str = ""
    class_name: Optional[str] = None
    creator_id: Optional[str] = None
    creator_name: Optional[str] = None
    materia: Optional[str] = None
    unidade: Optional[str] = None
    points: float = 10
    is_visible: bool = True
    allow_late_submissions: bool = False
    due_date: Optional[datetime] = None
    submissions: List[Submission] = field(default_factory=list)
    submission_count: int = 0
    pending_submission_count: int = 0
    status: str = ACTIVITY_PENDING
    created_at: Optional[datetime] = None

    def submission_for(self, student_id: str) -> Optional[Submission]:
        for submission in self.submissions:
            if submission.student_id == student_id:
                return submission
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "description": self.description,
            "type": self.type,
            "classId": self.class_id,
            "className": self.class_name,
            "creatorId": self.creator_id,
            "creatorName": self.creator_name,
            "materia": self.materia,
            "unidade": self.unidade,
            "points": self.points,
            "isVisible": self.is_visible,
            "allowLateSubmissions": self.allow_late_submissions,
            "dueDate": self.due_date,
            "submissions": [s.to_dict() for s in self.submissions],
            "submissionCount": self.submission_count,
            "pendingSubmissionCount": self.pending_submission_count,
            "status": self.status,
            "createdAt": self.created_at or _now(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], doc_id: Optional[str] = None) -> Activity:
        return cls(
            id=doc_id,
            title=data.get("title", ""),
            description=data.get("description", ""),
            type=data.get("type", "text"),
            class_id=data.get("classId", ""),
            class_name=data.get("className"),
            creator_id=data.get("creatorId"),
            creator_name=data.get("creatorName"),
            materia=data.get("materia"),
            unidade=data.get("unidade"),
            points=_number(data.get("points"), 10),
            is_visible=data.get("isVisible", True),
            allow_late_submissions=data.get("allowLateSubmissions", False),
            due_date=parse_datetime(data.get("dueDate")),
            submissions=[Submission.from_dict(s) for s in _list(data.get("submissions")) if isinstance(s, dict)],
            submission_count=_int(data.get("submissionCount")),
            pending_submission_count=_int(data.get("pendingSubmissionCount")),
            status=data.get("status", ACTIVITY_PENDING),
            created_at=coerce_datetime(data.get("createdAt")),
        )


# ===========================================================================
# 4. Notifications
# ===========================================================================

@dataclass
class Notification:
    id: Optional[str] = None
    title: str = ""
    summary: str = ""
    type: str = ""
    urgency: str = "medium"
    deep_link: Dict[str, Any] = field(default_factory=lambda: {"page": "dashboard"})
    read: bool = False
    timestamp: Optional[datetime] = None
    user_id: Optional[str] = None
    class_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    origin: str = ORIGIN_PRIVATE

    @property
    def is_broadcast(self) -> bool:
        return self.origin == ORIGIN_BROADCAST

    def is_visible(self, now: datetime, window: timedelta) -> bool:
        if self.is_broadcast:
            return self.expires_at is not None and now < self.expires_at
        return now - (self.timestamp or now) <= window

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "title": self.title,
            "summary": self.summary,
            "type": self.type,
            "urgency": self.urgency,
            "deepLink": dict(self.deep_link),
            "timestamp": self.timestamp or _now(),
        }
        if self.is_broadcast:
            d["classId"] = self.class_id
            d["expiresAt"] = self.expires_at
        else:
            d["userId"] = self.user_id
            d["read"] = self.read
        return d

    @classmethod
    def from_dict(cls, data: Dict[str, Any], doc_id: Optional[str] = None,
                  origin: str = ORIGIN_PRIVATE) -> Notification:
        return cls(
            id=doc_id,
            title=data.get("title", ""),
            summary=data.get("summary") or data.get("text", ""),
            type=data.get("type", ""),
            urgency=data.get("urgency", "medium"),
            deep_link=_map(data.get("deepLink")) or {"page": "dashboard"},
            # Broadcast read state lives in read receipts, never on the document.
            read=bool(data.get("read", False)) if origin == ORIGIN_PRIVATE else False,
            timestamp=coerce_datetime(data.get("timestamp")),
            user_id=data.get("userId"),
            class_id=data.get("classId"),
            expires_at=parse_datetime(data.get("expiresAt")),
            origin=origin,
        )


# ===========================================================================
# 5. Gamification
# ===========================================================================

@dataclass
class AchievementRule:
    id: Optional[str] = None
    title: str = ""
    description: str = ""
    points: int = 0
    tier: str = "bronze"
    criterion_type: Optional[str] = None
    criterion_count: int = 0
    status: str = RULE_ACTIVE

    @property
    def is_active(self) -> bool:
        return self.status != RULE_INACTIVE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "description": self.description,
            "points": self.points,
            "tier": self.tier,
            "criterionType": self.criterion_type,
            "criterionCount": self.criterion_count,
            "status": self.status,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], doc_id: Optional[str] = None) -> AchievementRule:
        return cls(
            id=doc_id,
            title=data.get("title", ""),
            description=data.get("description", ""),
            points=_int(data.get("points")),
            tier=data.get("tier", "bronze"),
            criterion_type=data.get("criterionType"),
            criterion_count=_int(data.get("criterionCount")),
            status=data.get("status", RULE_ACTIVE),
        )


@dataclass
class GamificationStats:
    quizzes_completed: int = 0
    modules_completed: int = 0
    activities_completed: int = 0
    login_streak: int = 0

    FIELDS = {
        "quizzes": "quizzesCompleted",
        "modules": "modulesCompleted",
        "activities": "activitiesCompleted",
    }

    def counter_for(self, criterion_type: Optional[str]) -> Optional[int]:
        """Counter matching an achievement criterion, None if unknown."""
        if criterion_type == "quizzes":
            return self.quizzes_completed
        if criterion_type == "modules":
            return self.modules_completed
        if criterion_type == "activities":
            return self.activities_completed
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "quizzesCompleted": self.quizzes_completed,
            "modulesCompleted": self.modules_completed,
            "activitiesCompleted": self.activities_completed,
            "loginStreak": self.login_streak,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> GamificationStats:
        data = _map(data)
        return cls(
            quizzes_completed=_int(data.get("quizzesCompleted")),
            modules_completed=_int(data.get("modulesCompleted")),
            activities_completed=_int(data.get("activitiesCompleted")),
            login_streak=_int(data.get("loginStreak")),
        )


@dataclass
class UnlockedAchievement:
    date: Optional[datetime] = None
    seen: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"date": (self.date or _now()).isoformat(), "seen": self.seen}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> UnlockedAchievement:
        data = _map(data)
        return cls(date=coerce_datetime(data.get("date")), seen=bool(data.get("seen", False)))


@dataclass
class UserAchievementState:
    xp: int = 0
    stats: GamificationStats = field(default_factory=GamificationStats)
    unlocked: Dict[str, UnlockedAchievement] = field(default_factory=dict)
    updated_at: Optional[datetime] = None

    @property
    def level(self) -> int:
        return self.xp // 100 + 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "xp": self.xp,
            "level": self.level,
            "stats": self.stats.to_dict(),
            "unlocked": {k: v.to_dict() for k, v in self.unlocked.items()},
            "updatedAt": self.updated_at or _now(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> UserAchievementState:
        data = _map(data)
        return cls(
            xp=max(_int(data.get("xp")), 0),
            stats=GamificationStats.from_dict(data.get("stats")),
            unlocked={k: UnlockedAchievement.from_dict(v) for k, v in _map(data.get("unlocked")).items()},
            updated_at=parse_datetime(data.get("updatedAt")),
        )


@dataclass
class QuizResult:
    quiz_id: str = ""
    title: str = ""
    last_score: int = 0
    total_questions: int = 0
    attempts: int = 0
    best_score: int = 0
    last_completed_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any], doc_id: Optional[str] = None) -> QuizResult:
        return cls(
            quiz_id=data.get("quizId") or doc_id or "",
            title=data.get("title", ""),
            last_score=_int(data.get("lastScore")),
            total_questions=_int(data.get("totalQuestions")),
            attempts=_int(data.get("attempts")),
            best_score=_int(data.get("bestScore")),
            last_completed_at=parse_datetime(data.get("lastCompletedAt")),
        )


# ===========================================================================
# 6. Catalog
# ===========================================================================

@dataclass
class Quiz:
    id: Optional[str] = None
    title: str = ""
    description: str = ""
    visibility: str = "public"
    class_id: Optional[str] = None
    series: List[str] = field(default_factory=list)
    status: str = "active"
    module_id: Optional[str] = None
    attempts: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any], doc_id: Optional[str] = None) -> Quiz:
        series = data.get("series")
        return cls(
            id=doc_id,
            title=data.get("title", ""),
            description=data.get("description", ""),
            visibility=data.get("visibility", "public"),
            class_id=data.get("classId"),
            series=[series] if isinstance(series, str) else _list(series),
            status=data.get("status", "active"),
            module_id=data.get("moduleId"),
        )


@dataclass
class Module:
    id: Optional[str] = None
    title: str = ""
    description: str = ""
    visibility: str = "public"
    class_ids: List[str] = field(default_factory=list)
    series: List[str] = field(default_factory=list)
    creator_id: Optional[str] = None
    status: str = "active"
    progress: int = 0

    @classmethod
    def from_dict(cls, data: Dict[str, Any], doc_id: Optional[str] = None) -> Module:
        series = data.get("series")
        return cls(
            id=doc_id,
            title=data.get("title", ""),
            description=data.get("description", ""),
            visibility=data.get("visibility", "public"),
            class_ids=_list(data.get("classIds")),
            series=[series] if isinstance(series, str) else _list(series),
            creator_id=data.get("creatorId"),
            status=data.get("status", "active"),
        )


# ===========================================================================
# 7. Teacher collaboration and attendance
# ===========================================================================

@dataclass
class ClassInvitation:
    id: Optional[str] = None
    class_id: str = ""
    class_name: str = ""
    inviter_id: str = ""
    inviter_name: str = ""
    invitee_id: str = ""
    invitee_email: str = ""
    subject: str = ""
    status: str = "pending"
    timestamp: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": "class_co_teacher",
            "classId": self.class_id,
            "className": self.class_name,
            "inviterId": self.inviter_id,
            "inviterName": self.inviter_name,
            "inviteeId": self.invitee_id,
            "inviteeEmail": self.invitee_email,
            "subject": self.subject,
            "status": self.status,
            "timestamp": self.timestamp or _now(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], doc_id: Optional[str] = None) -> ClassInvitation:
        return cls(
            id=doc_id,
            class_id=data.get("classId", ""),
            class_name=data.get("className", ""),
            inviter_id=data.get("inviterId", ""),
            inviter_name=data.get("inviterName", ""),
            invitee_id=data.get("inviteeId", ""),
            invitee_email=data.get("inviteeEmail", ""),
            subject=data.get("subject", ""),
            status=data.get("status", "pending"),
            timestamp=coerce_datetime(data.get("timestamp")),
        )


@dataclass
class AttendanceSession:
    id: Optional[str] = None
    class_id: str = ""
    date: str = ""
    turno: str = ""
    horario: int = 1
    teacher_id: Optional[str] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any], doc_id: Optional[str] = None) -> AttendanceSession:
        return cls(
            id=doc_id,
            class_id=data.get("classId", ""),
            date=data.get("date", ""),
            turno=data.get("turno", ""),
            horario=_int(data.get("horario"), 1),
            teacher_id=data.get("teacherId"),
            created_at=coerce_datetime(data.get("createdAt")),
        )
