"""
exam_engine/services
Business logic for exam authoring, review, attempts, grading and re-attempts.
"""
