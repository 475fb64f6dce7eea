from coderoom.models.user import User
from coderoom.models.problem import Problem
from coderoom.models.room import Room, RoomParticipant

__all__ = ["User", "Problem", "Room", "RoomParticipant"]
