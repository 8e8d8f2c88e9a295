from datetime import datetime

from dispatch.exceptions import Conflict
from dispatch.models import Assignment, AssignmentState


def resolve_assignment(
    assignment: Assignment,
    new_state: AssignmentState,
    *,
    at: datetime,
    expected: AssignmentState = AssignmentState.PENDING,
) -> Assignment:
    """
    Equality-guarded transition shared by respond, claim, expiry and cancellation.

    Applies only if the assignment is still in `expected`; otherwise raises Conflict
    and leaves the record untouched.
    """
    if new_state is AssignmentState.PENDING:
        raise ValueError("an assignment cannot be moved back to pending")

    if assignment.state is not expected:
        raise Conflict(
            f"Assignment {assignment.id} is {assignment.state.value}, expected {expected.value}"
        )

    assignment.state = new_state
    assignment.resolved_at = at
    if new_state in (AssignmentState.ACCEPTED, AssignmentState.DECLINED):
        assignment.responded_at = at
    return assignment
