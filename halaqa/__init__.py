"""
halaqa package - Django project for live recitation review.

Teachers open exclusive listening sessions ("tickets") against a student,
mark recitation mistakes in real time and submit the session for an admin to
approve, reject or reassign. Approved mistakes are folded into the student's
Personal Mushaf, a deduplicated ledger of recurring mistakes with analytics.

The project uses Python 3.12+ and Django 5.2.
"""
