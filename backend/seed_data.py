# backend/seed_data.py
from database.connection import SessionLocal, engine, Base
from database.models import (
    Clinic, ClinicStatus, User, UserRole, Notification, Patient, TherapistPatientAssignment,
    Discipline, ProgramArea, ProgramSubArea, Program, ProgramStep,
    PatientProgramAssignment, PatientProgramProgress, ScheduledSession,
    ClinicBilling, BillingStatus
)
from api.auth import hash_password
from datetime import datetime, date, time, timedelta
from decimal import Decimal

db = SessionLocal()

DEMO_PASSWORD = "demo123"

PROGRAM_LIBRARY = {
    "Psicologia": {
        "Comunicação": {
            "Mando": [
                {
                    "name": "Pedir itens preferidos",
                    "objective": "Solicitar um item preferido usando palavra ou gesto",
                    "skill": "Mando",
                    "materials": ["brinquedos preferidos", "cartões de figuras"],
                    "steps": ["Com dica física total", "Com dica gestual", "Independente"],
                },
            ],
            "Tato": [
                {
                    "name": "Nomear objetos comuns",
                    "objective": "Nomear objetos do cotidiano apresentados em figuras",
                    "skill": "Tato",
                    "materials": ["cartões de figuras"],
                    "steps": ["Eco com modelo", "Dica parcial", "Independente"],
                },
            ],
        },
        "Habilidades Sociais": {
            "Contato Visual": [
                {
                    "name": "Contato visual ao ser chamado",
                    "objective": "Olhar para o terapeuta quando chamado pelo nome",
                    "skill": "Atenção compartilhada",
                    "materials": [],
                    "steps": ["A 1 metro", "A 3 metros", "Em ambiente com distratores"],
                },
            ],
        },
    },
    "Fonoaudiologia": {
        "Linguagem Receptiva": {
            "Comandos": [
                {
                    "name": "Seguir comandos de um passo",
                    "objective": "Executar instruções simples sem apoio visual",
                    "skill": "Compreensão",
                    "materials": ["bola", "caixa"],
                    "default_trials": 8,
                    "steps": ["Com modelo", "Sem modelo"],
                },
            ],
        },
    },
    "Terapia Ocupacional": {
        "Motricidade Fina": {
            "Preensão": [
                {
                    "name": "Encaixe de peças",
                    "objective": "Encaixar peças em tabuleiro usando pinça",
                    "skill": "Coordenação motora fina",
                    "materials": ["tabuleiro de encaixe"],
                    "steps": ["Peças grandes", "Peças médias", "Peças pequenas"],
                },
            ],
        },
    },
}

def clear_data():
    print("🗑️ Clearing existing data...")
    for model in (
        Notification, ScheduledSession, PatientProgramProgress, PatientProgramAssignment,
        TherapistPatientAssignment,
        ClinicBilling, User, Patient, Clinic,
        ProgramStep, Program, ProgramSubArea, ProgramArea, Discipline,
    ):
        db.query(model).delete()
    db.commit()
    print("✅ All existing data cleared!")

def seed_program_library():
    print("\n📚 Creating program library...")
    programs = []
    for discipline_name, areas in PROGRAM_LIBRARY.items():
        discipline = Discipline(name=discipline_name)
        db.add(discipline)
        for area_name, sub_areas in areas.items():
            area = ProgramArea(name=area_name, discipline=discipline)
            db.add(area)
            for sub_area_name, entries in sub_areas.items():
                sub_area = ProgramSubArea(name=sub_area_name, area=area)
                db.add(sub_area)
                for entry in entries:
                    program = Program(
                        name=entry["name"],
                        objective=entry["objective"],
                        skill=entry["skill"],
                        materials=entry["materials"],
                        default_trials=entry.get("default_trials", 10),
                        sub_area=sub_area,
                    )
                    for number, step_name in enumerate(entry["steps"], start=1):
                        program.steps.append(ProgramStep(step_number=number, name=step_name))
                    db.add(program)
                    programs.append(program)
    db.flush()
    print(f"✅ Created {len(programs)} programs")
    return programs

def seed_data():
    print("🌱 Starting database seeding...")
    Base.metadata.create_all(bind=engine)

    try:
        # Check if data already exists
        existing_users = db.query(User).count()
        if existing_users > 0:
            print(f"⚠️ Database already has {existing_users} users. Skipping seeding.")
            response = input("Do you want to clear and re-seed? (yes/no): ")
            if response.lower() != 'yes':
                return
            clear_data()

        programs = seed_program_library()

        # ==================== CLINIC ====================
        print("\n🏥 Creating demo clinic...")
        clinic = Clinic(name="Clínica Demonstração", max_patients=20, status=ClinicStatus.ACTIVE.value)
        db.add(clinic)
        db.flush()

        # ==================== USERS ====================
        print("\n👤 Creating users...")
        password_hash = hash_password(DEMO_PASSWORD)

        super_admin = User(
            username="superadmin",
            full_name="Platform Administrator",
            password_hash=password_hash,
            role=UserRole.SUPER_ADMIN.value,
            is_admin=True,
        )
        admin = User(
            clinic_id=clinic.id,
            username="admin",
            full_name="Ana Coordenadora",
            password_hash=password_hash,
            role=UserRole.THERAPIST.value,
            is_admin=True,
        )
        therapists = [
            User(clinic_id=clinic.id, username=username, full_name=name,
                 password_hash=password_hash, role=UserRole.THERAPIST.value)
            for username, name in (("bruno", "Bruno Terapeuta"), ("carla", "Carla Fonoaudióloga"))
        ]
        db.add_all([super_admin, admin] + therapists)
        db.flush()
        print(f"✅ Created {2 + len(therapists)} users")

        # ==================== PATIENTS ====================
        print("\n🧒 Creating patients...")
        patients_data = [
            {"name": "Lucas Almeida", "date_of_birth": date(2018, 3, 12), "diagnosis": "TEA nível 1"},
            {"name": "Marina Souza", "date_of_birth": date(2017, 8, 25), "diagnosis": "TEA nível 2"},
            {"name": "Pedro Lima", "date_of_birth": date(2019, 1, 4), "diagnosis": "Atraso de linguagem"},
        ]
        patients = [Patient(clinic_id=clinic.id, **data) for data in patients_data]
        db.add_all(patients)
        db.flush()

        parent = User(
            clinic_id=clinic.id,
            username="responsavel.lucas",
            full_name="Responsável do Lucas",
            password_hash=password_hash,
            role=UserRole.PARENT.value,
            associated_patient_id=patients[0].id,
        )
        db.add(parent)

        for index, patient in enumerate(patients):
            therapist = therapists[index % len(therapists)]
            db.add(TherapistPatientAssignment(patient_id=patient.id, therapist_id=therapist.id))
            db.add(TherapistPatientAssignment(patient_id=patient.id, therapist_id=admin.id))
            for program in programs[:2]:
                db.add(PatientProgramAssignment(
                    patient_id=patient.id,
                    program_id=program.id,
                    assigned_by_id=admin.id,
                ))
        print(f"✅ Created {len(patients)} patients")

        # ==================== SCHEDULE ====================
        print("\n📅 Creating appointments...")
        sessions_created = 0
        today = date.today()
        for day_offset in range(1, 6):
            session_date = today + timedelta(days=day_offset)
            for index, patient in enumerate(patients):
                therapist = therapists[index % len(therapists)]
                db.add(ScheduledSession(
                    patient_id=patient.id,
                    therapist_id=therapist.id,
                    discipline_id=programs[0].sub_area.area.discipline_id,
                    scheduled_date=session_date,
                    scheduled_time=time(9 + index * 2, 0),
                    duration_minutes=60,
                    created_by=admin.id,
                ))
                sessions_created += 1
        print(f"✅ Created {sessions_created} appointments")

        # ==================== BILLING ====================
        print("\n💳 Creating billing...")
        db.add(ClinicBilling(
            clinic_id=clinic.id,
            amount=Decimal("34.90") * clinic.max_patients,
            due_date=today + timedelta(days=10),
            status=BillingStatus.PENDING.value,
            plan_type="per_patient",
            notes=f"Slots contracted: {clinic.max_patients}",
        ))

        db.commit()

        print("\n" + "="*50)
        print("🎉 Database seeding completed successfully!")
        print("="*50)
        print(f"\n📊 Summary:")
        print(f"   Programs: {len(programs)}")
        print(f"   Patients: {len(patients)}")
        print(f"   Appointments: {sessions_created}")
        print(f"\n🔑 Demo logins (password '{DEMO_PASSWORD}'): superadmin, admin, bruno, carla, responsavel.lucas")
        print(f"   Seeded at {datetime.now():%Y-%m-%d %H:%M}")

    except Exception as e:
        print(f"\n❌ Error during seeding: {e}")
        db.rollback()
        import traceback
        traceback.print_exc()
    finally:
        db.close()

if __name__ == "__main__":
    seed_data()
