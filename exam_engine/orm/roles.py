"""
exam_engine/orm/roles.py
User roles as carried in the identity token.

Users live in the external auth service; the engine only needs the role
claim to decide who may act.
"""
from enum import Enum


class UserRole(str, Enum):
    student = "student"
    teacher = "teacher"
    admin = "admin"


AUTHOR_ROLES = (UserRole.teacher, UserRole.admin)
