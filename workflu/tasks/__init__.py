"""
WorkFlu - Background Tasks

Scheduled notification and monitoring jobs, run in process by the
NotificationScheduler or out of process by Celery beat.
"""
