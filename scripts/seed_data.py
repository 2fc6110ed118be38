"""
Seed Data Generator — creates realistic fake study history for development.

Run: python scripts/seed_data.py [user_id]
"""

import random
import sys
from datetime import datetime, timedelta
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from smartnotify.data.database import Database
from smartnotify.data.models import TaskStatus
from smartnotify.data.repository import Repository


def seed(user_id: str = "default", num_days: int = 30) -> None:
    db = Database()
    db.connect()
    repo = Repository(db.conn)
    now = datetime.now()

    # ── Tasks ───────────────────────────────────────────────────────────
    courses_tasks = {
        "CS 440": ["HW 3", "Project proposal", "Midterm review"],
        "MATH 221": ["Problem set 7", "Quiz prep"],
        "ENG 101": ["Essay draft", "Reading response"],
    }
    for course, titles in courses_tasks.items():
        for title in titles:
            status = random.choice([TaskStatus.TODO, TaskStatus.IN_PROGRESS, TaskStatus.COMPLETED])
            due = now + timedelta(days=random.randint(-3, 14))
            created = now - timedelta(days=random.randint(1, 20))
            repo.add_task(user_id, f"{course}: {title}", status=status,
                          due_date=due, created_at=created)

    # ── Study sessions ──────────────────────────────────────────────────
    # Mornings are rated a little better so peak-time analysis has a signal
    session_count = 0
    for day in range(num_days, 0, -1):
        date = now - timedelta(days=day)
        for _ in range(random.randint(0, 3)):
            hour = random.choice([8, 9, 10, 14, 15, 19, 20, 21])
            start = date.replace(hour=hour, minute=random.randint(0, 59),
                                 second=0, microsecond=0)
            duration = random.choice([25, 45, 60, 90, 120])
            base = 4 if hour < 12 else 3
            effectiveness = max(1, min(5, base + random.randint(-1, 1)))
            rated = random.random() < 0.8
            repo.add_study_session(user_id, start, duration,
                                   effectiveness=effectiveness if rated else None,
                                   course_id=random.choice(list(courses_tasks)))
            session_count += 1

    print(f"Seeded {session_count} study sessions and "
          f"{sum(len(v) for v in courses_tasks.values())} tasks for {user_id!r}.")
    db.close()


if __name__ == "__main__":
    seed(sys.argv[1] if len(sys.argv) > 1 else "default")
