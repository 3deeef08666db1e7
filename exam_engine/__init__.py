"""
Exam lifecycle and attempt-grading engine.
"""
