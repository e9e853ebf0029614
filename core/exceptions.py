class ExamError(Exception):
    """Base class for every error the session engine raises on purpose."""


class NotFoundError(ExamError):
    """A session, question, position or answer option does not exist."""


class InvalidStateError(ExamError):
    """The session is not in a state that allows the requested operation."""


class ActiveSessionExistsError(ExamError):
    def __init__(self, user_id: int, exam_id: int, session_id: str):
        self.user_id = user_id
        self.exam_id = exam_id
        self.session_id = session_id
        super().__init__(f"User {user_id} already has active session {session_id} for exam {exam_id}")


class InsufficientPoolError(ExamError):
    def __init__(self, category: str, needed: int, available: int):
        self.category = category
        self.needed = needed
        self.available = available
        super().__init__(f"Not enough questions in category '{category}'. Need {needed}, got {available}")


class PersistenceError(ExamError):
    """A store transaction failed and was rolled back."""
