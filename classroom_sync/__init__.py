import logging

from config import Config

logger = logging.getLogger(__name__)


def create_data_service(user, store=None, config_class=Config, notices=None):
    """Build the data service for ``user``'s role.

    Without an explicit ``store`` the Firestore-backed store is used and
    Firebase is initialized from ``config_class``.
    """
    logging.getLogger('classroom_sync').setLevel(config_class.LOG_LEVEL)

    if store is None:
        from classroom_sync.firebase_init import init_firebase
        from classroom_sync.firestore_store import FirestoreStore
        init_firebase(config_class)
        store = FirestoreStore()

    from classroom_sync.services.student_data import StudentDataService
    from classroom_sync.services.teacher_data import TeacherDataService

    if user.is_teacher():
        service_class = TeacherDataService
    elif user.is_student():
        service_class = StudentDataService
    else:
        raise ValueError(f'No data service for role: {user.role}')

    logger.debug('Creating %s for %s', service_class.__name__, user.id)
    return service_class(user, store, config_class=config_class, notices=notices)
