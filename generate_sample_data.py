import csv
import os
import random
from datetime import date, timedelta

from coop_portal import create_app
from coop_portal.importer import ensure_admin, import_ledger_csv

MEMBERS = [
    ("Ada Obi", "ada@example.com"),
    ("Tunde Bello", "tunde@example.com"),
    ("Ngozi Eze", "ngozi@example.com"),
]
HEADER = ["Email", "Name", "Date", "Description", "Thirteenth Month", "Electronics Loan", "Emergency Loan", "Main Loan", "Savings"]


def sample_rows(months=12):
    start = date.today().replace(day=25) - timedelta(days=30 * months)
    for month in range(months):
        posted = start + timedelta(days=30 * month)
        for name, email in MEMBERS:
            savings = random.choice([5000, 7500, 10000])
            main_loan = random.choice(["", "", "-2,500"])
            thirteenth = "12,500" if posted.month == 12 else ""
            yield [email, name, posted.strftime("%Y/%m/%d"), "Monthly contribution", thirteenth, "", "", main_loan, f"{savings:,}"]


def main():
    app = create_app()
    csv_path = os.path.join(app.instance_path, "sample_ledger.csv")
    with open(csv_path, "w", newline="") as handle:
        writer = csv.writer(handle)
        writer.writerow(HEADER)
        writer.writerows(sample_rows())

    with app.app_context():
        db = app.get_db()
        ensure_admin(db, default_password=app.config["DEFAULT_PASSWORD"])
        summary = import_ledger_csv(db, csv_path, default_password=app.config["DEFAULT_PASSWORD"])

    for line in summary.report_lines():
        print(line)
    print(f"Sample ledger written to {csv_path}. Login with ada@example.com / {app.config['DEFAULT_PASSWORD']}")


if __name__ == "__main__":
    main()
