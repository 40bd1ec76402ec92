import asyncio
import logging
from datetime import datetime, timezone, timedelta

from config import Config
from classroom_sync.store import BatchOp

logger = logging.getLogger('seed')


async def seed_store(store, now=None):
    """Write demo users, classes, activities, catalog items and achievement
    rules. Returns the ids that were created."""
    now = now or datetime.now(timezone.utc)
    ops = []

    print("Creating users...")
    teacher_id = 'teacher1'
    users = {
        teacher_id: {'name': 'Ana Souza', 'email': 'teacher1@example.com', 'role': 'teacher'},
        'teacher2': {'name': 'Bruno Lima', 'email': 'teacher2@example.com', 'role': 'teacher'},
    }
    student_ids = []
    for i in range(1, 6):
        uid = f'student{i}'
        users[uid] = {
            'name': f'Student {i}',
            'email': f'student{i}@example.com',
            'role': 'student',
            'series': '9',
        }
        student_ids.append(uid)
    for uid, data in users.items():
        ops.append(BatchOp.set(f'users/{uid}', data))

    print("Creating classes...")
    classes = [
        ('class_math', 'Mathematics 9A', 'MATH9A'),
        ('class_sci', 'Science 9A', 'SCI9A1'),
        ('class_hist', 'History 9B', 'HIST9B'),
    ]
    for class_id, name, code in classes:
        members = student_ids[:3] if class_id != 'class_hist' else student_ids[3:]
        ops.append(BatchOp.set(f'classes/{class_id}', {
            'name': name,
            'code': code,
            'teacherId': teacher_id,
            'teachers': [teacher_id],
            'subjects': {teacher_id: 'Homeroom'},
            'teacherNames': {teacher_id: users[teacher_id]['name']},
            'students': [{'id': uid, 'name': users[uid]['name'], 'avatarUrl': None} for uid in members],
            'studentIds': members,
            'studentCount': len(members),
            'notices': [],
            'noticeCount': 0,
            'createdAt': now - timedelta(days=60),
        }))

    print("Creating activities...")
    activity_ids = []
    for c, (class_id, name, _) in enumerate(classes):
        for i in range(12):
            activity_id = f'{class_id}_act{i:02d}'
            activity_ids.append(activity_id)
            ops.append(BatchOp.set(f'activities/{activity_id}', {
                'title': f'{name} - Exercise {i + 1}',
                'description': 'Answer the questions in your own words.',
                'type': 'text',
                'classId': class_id,
                'className': name,
                'creatorId': teacher_id,
                'creatorName': users[teacher_id]['name'],
                'materia': name.split()[0],
                'unidade': f'{i % 4 + 1}',
                'points': 10,
                'isVisible': True,
                'submissions': [],
                'submissionCount': 0,
                'pendingSubmissionCount': 0,
                'status': 'pending',
                'createdAt': now - timedelta(days=c, hours=i),
            }))

    print("Creating quizzes and modules...")
    for i in range(1, 4):
        ops.append(BatchOp.set(f'quizzes/quiz{i}', {
            'title': f'Quiz {i}',
            'status': 'active',
            'visibility': 'public',
            'series': ['9'],
        }))
    ops.append(BatchOp.set('modules/module_public', {
        'title': 'Study skills',
        'status': 'active',
        'visibility': 'public',
        'series': ['9'],
        'creatorId': teacher_id,
    }))
    ops.append(BatchOp.set('modules/module_math', {
        'title': 'Fractions',
        'status': 'active',
        'visibility': 'class',
        'classIds': ['class_math'],
        'creatorId': teacher_id,
    }))

    print("Creating achievement rules...")
    rules = [
        ('first_quiz', 'First quiz', 'quizzes', 1, 'bronze'),
        ('quiz_master', 'Quiz master', 'quizzes', 3, 'silver'),
        ('first_module', 'First module', 'modules', 1, 'bronze'),
        ('first_activity', 'First activity', 'activities', 1, 'bronze'),
    ]
    for rule_id, title, criterion, count, tier in rules:
        ops.append(BatchOp.set(f'achievements/{rule_id}', {
            'title': title,
            'description': f'Complete {count} {criterion}.',
            'points': 50,
            'tier': tier,
            'criterionType': criterion,
            'criterionCount': count,
            'status': 'active',
        }))

    await store.batch_write(ops)
    logger.info('Seeded %d documents', len(ops))

    print("\n" + "=" * 60)
    print("    Demo accounts")
    print("=" * 60)
    print("  Teacher: teacher1@example.com")
    print("  Students: student1~5@example.com")
    print("\n[Class codes]")
    for _, name, code in classes:
        print(f"  {name}: {code}")
    print("=" * 60)

    return {
        'teacher_id': teacher_id,
        'student_ids': student_ids,
        'class_ids': [c[0] for c in classes],
        'activity_ids': activity_ids,
    }


def seed_database():
    from classroom_sync.firebase_init import init_firebase
    from classroom_sync.firestore_store import FirestoreStore

    logging.basicConfig(level=Config.LOG_LEVEL)
    init_firebase(Config)
    asyncio.run(seed_store(FirestoreStore()))
    print("Database seeding complete!")


if __name__ == '__main__':
    seed_database()
