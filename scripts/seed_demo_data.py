"""
Seed de datos de demostración para cajas y conciliación

Crea:
- Cajas registradoras con una sesión abierta y algunos movimientos
- Pagos internos APPROVED
- Un lote de liquidación de Mercado Pago que referencia parte de esos pagos,
  conciliado al final

Uso:
    python scripts/seed_demo_data.py --registers 3 --payments 40
"""
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import argparse
import random
from datetime import datetime, timedelta

from app.database.database import Base, SessionLocal, engine
from app.common.money import Currency, Money
from app.modules.cash.models import CashRegister, MovementType
from app.modules.cash.service import CashSessionService
from app.modules.payments.models import Payment, PaymentStatus
from app.modules.settlements.importer import SettlementBatchImporter
from app.modules.settlements.matcher import SettlementMatcher
from app.modules.settlements.summary import ReconciliationSummaryBuilder

ACTOR = "seed"


def create_registers(db, count: int):
    service = CashSessionService(db)
    registers = []
    for i in range(1, count + 1):
        name = f"Caja {i}"
        existing = db.query(CashRegister).filter(CashRegister.name == name).first()
        registers.append(existing or service.create_register(name, Currency.ARS))
    return registers


def create_sessions(db, registers, movements_per_session: int):
    service = CashSessionService(db)
    opened = 0
    for register in registers:
        if service.get_current_session(register.id):
            continue
        session = service.open_session(register.id, Money(random.randint(5, 20) * 1000_00, Currency.ARS), ACTOR,
                                       notes="Apertura de demo")
        for _ in range(movements_per_session):
            movement_type = random.choice(list(MovementType))
            amount = Money(random.randint(1, 300) * 100, Currency.ARS)
            service.record_movement(session.id, movement_type, amount, ACTOR, note="Movimiento de demo")
        opened += 1
    return opened


def create_payments(db, count: int, base_day: datetime):
    payments = []
    for _ in range(count):
        payment = Payment(
            amount_minor=random.randint(10, 5000) * 100,
            currency=Currency.ARS,
            occurred_at=base_day - timedelta(days=random.randint(0, 2), minutes=random.randint(0, 600)),
            status=PaymentStatus.APPROVED,
        )
        db.add(payment)
        payments.append(payment)
    db.commit()
    return payments


def build_mp_feed(payments, base_day: datetime, unmatched: int):
    """Items de liquidación MP: uno por pago más algunos sin contraparte interna"""
    items = []
    for i, payment in enumerate(payments, start=1):
        amount = payment.amount_minor / 100
        items.append({
            "id": f"MP-{i:06d}",
            "transaction_amount": f"{amount:.2f}",
            "fee_amount": f"{amount * 0.0399:.2f}",
            "money_release_date": base_day.isoformat() + "Z",
            "currency_id": "ARS",
        })
    for j in range(unmatched):
        items.append({
            "id": f"MP-X{j:05d}",
            "transaction_amount": f"{random.randint(10, 500)}.00",
            "fee_amount": "0.00",
            "money_release_date": base_day.isoformat() + "Z",
            "currency_id": "ARS",
        })
    return {"results": items}


def main():
    parser = argparse.ArgumentParser(description="Seed cash session and settlement demo data")
    parser.add_argument("--registers", type=int, default=3)
    parser.add_argument("--movements", type=int, default=8)
    parser.add_argument("--payments", type=int, default=40)
    parser.add_argument("--unmatched", type=int, default=5)
    parser.add_argument("--seed", type=int, default=None)
    args = parser.parse_args()

    if args.seed is not None:
        random.seed(args.seed)

    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        print("Creating cash registers...")
        registers = create_registers(db, args.registers)
        print(f"Registers: {len(registers)}")

        print("Opening sessions with movements...")
        opened = create_sessions(db, registers, args.movements)
        print(f"Sessions opened: {opened}")

        base_day = datetime.utcnow().replace(microsecond=0)
        print("Creating approved payments...")
        payments = create_payments(db, args.payments, base_day)
        print(f"Payments created: {len(payments)}")

        print("Importing Mercado Pago settlement batch...")
        feed = build_mp_feed(payments, base_day, args.unmatched)
        result = SettlementBatchImporter(db).import_batch("MP", feed, ACTOR)
        batch = result.batch
        print(f"Batch {batch.id}: {result.batch.record_count} records, {result.import_errors} errors")

        print("Matching batch...")
        SettlementMatcher(db).match_batch(batch.id, actor=ACTOR)
        summary = ReconciliationSummaryBuilder(db).summarize(batch.id)

        print("\nSeed completed.")
        print("Reconciliation:")
        print(f"  Matched:    {summary.matched_count}")
        print(f"  Unmatched:  {summary.unmatched_count}")
        print(f"  Disputed:   {summary.disputed_count}")
        print(f"  Settled:    {summary.total_settled_amount}")
        print(f"  Fees:       {summary.total_fees} ({summary.fee_pct})")
    finally:
        db.close()


if __name__ == "__main__":
    main()
