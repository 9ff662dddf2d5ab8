"""
lessonrag - lesson embedding index and retrieval for a tutoring assistant.

Usage:
    lessonrag index --course COURSE_ID     # Index a course's lessons
    lessonrag index --recent 25 --dry-run  # Preview the most recent lessons
    lessonrag query "question" --course C  # Nearest-neighbor lookup
"""

__version__ = "0.1.0"
