from datetime import date
from pathlib import Path
import sys


# Ensure imports work when running this file directly: `python scripts/init_db.py`.
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from backoffice.core.permissions import Actor
from backoffice.db import Base, SessionLocal, engine
from backoffice.models import Role, User
from backoffice.services.availability_service import add_slot
from backoffice.services.contract_service import admin_sign_contract, sign_contract
from backoffice.services.template_service import generate_classes, save_template


Base.metadata.create_all(bind=engine)

db = SessionLocal()
try:
    if not db.query(User).first():
        admin = User(name='Office Admin', email='admin@example.com', role=Role.ADMIN.value)
        teacher = User(name='Marina Costa', email='marina@example.com', role=Role.TEACHER.value)
        student = User(name='Lucas Pereira', email='lucas@example.com', role=Role.STUDENT.value)
        db.add_all([admin, teacher, student])
        db.commit()

        admin_actor = Actor(user_id=admin.id, role=admin.role)
        teacher_actor = Actor(user_id=teacher.id, role=teacher.role)
        student_actor = Actor(user_id=student.id, role=student.role)

        for weekday in (0, 2, 4):
            for start_time in ('09:00', '10:00', '14:00'):
                add_slot(db, teacher_id=teacher.id, weekday=weekday, start_time=start_time, actor=teacher_actor)

        sign_contract(
            db,
            student.id,
            {
                'name': student.name,
                'tax_id': '123.456.789-09',
                'birth_date': date(1998, 5, 14),
                'address': 'Rua das Flores 120',
                'city': 'Sao Paulo',
                'state': 'SP',
                'agreed_to_terms': True,
            },
            student_actor,
        )
        admin_sign_contract(db, student.id, {'name': admin.name}, admin_actor)

        save_template(
            db,
            student.id,
            [
                {'weekday': 0, 'start_time': '10:00', 'teacher_id': teacher.id, 'language': 'English'},
                {'weekday': 2, 'start_time': '14:00', 'teacher_id': teacher.id, 'language': 'English'},
            ],
            admin_actor,
        )
        result = generate_classes(db, student.id, admin_actor)
        print(f"Generated {result['created']} classes for {student.name}.")
finally:
    db.close()

print('DB initialized with sample data.')
