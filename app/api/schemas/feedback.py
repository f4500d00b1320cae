from pydantic import BaseModel, Field


class FeedbackCreate(BaseModel):
    appointment_id: int
    therapist_id: int | None = None
    rating: int = Field(ge=1, le=5)
    comments: str | None = Field(default=None, max_length=2000)
    # Admins may record feedback on a student's behalf
    student_id: int | None = None
