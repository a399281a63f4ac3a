"""
RFC / Management of Change workflow.

- Records move through a fixed status graph (see `workflow.TRANSITIONS`)
- Submission fans out into one approval step per affected department
- Every transition is atomic, audited, and followed by notifications
"""
