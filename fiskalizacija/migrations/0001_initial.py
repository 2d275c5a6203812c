from django.conf import settings
from django.db import migrations, models
import django.db.models.deletion


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="FiscalSubmission",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("PENDING", "Pending"),
                            ("ACCEPTED", "Accepted (JIR issued)"),
                            ("REJECTED", "Rejected by CIS"),
                            ("OUTCOME_UNKNOWN", "Outcome unknown (reconcile manually)"),
                            ("ERROR", "Not delivered"),
                        ],
                        db_index=True,
                        default="PENDING",
                        max_length=20,
                    ),
                ),
                ("oib", models.CharField(max_length=11)),
                ("invoice_number", models.CharField(max_length=20)),
                ("business_space_code", models.CharField(max_length=20)),
                ("cash_register_code", models.CharField(max_length=20)),
                ("invoice_date", models.DateField(db_index=True)),
                ("issued_at", models.DateTimeField()),
                ("total_amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("vat_breakdown", models.JSONField(blank=True, default=list)),
                (
                    "payment_method",
                    models.CharField(
                        choices=[
                            ("CASH", "CASH"),
                            ("CARD", "CARD"),
                            ("CHECK", "CHECK"),
                            ("TRANSFER", "TRANSFER"),
                            ("OTHER", "OTHER"),
                        ],
                        default="CASH",
                        max_length=10,
                    ),
                ),
                ("operator_oib", models.CharField(blank=True, max_length=11)),
                ("is_storno", models.BooleanField(default=False)),
                ("original_jir", models.CharField(blank=True, max_length=36)),
                ("storno_reason", models.CharField(blank=True, max_length=100)),
                ("storno_type", models.CharField(blank=True, max_length=10)),
                ("zki", models.CharField(blank=True, max_length=32)),
                ("jir", models.CharField(blank=True, db_index=True, max_length=36)),
                ("message_id", models.CharField(blank=True, max_length=36)),
                ("error_code", models.CharField(blank=True, max_length=64)),
                ("error_kind", models.CharField(blank=True, max_length=32)),
                ("error_message", models.TextField(blank=True)),
                ("raw_response", models.TextField(blank=True)),
                ("fiscal_receipt_url", models.URLField(blank=True, max_length=255)),
                ("qr_code_data", models.CharField(blank=True, max_length=255)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("submitted_at", models.DateTimeField(blank=True, null=True)),
                ("reconciled_at", models.DateTimeField(blank=True, null=True)),
                (
                    "created_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="fiscal_submissions",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "original_submission",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="storno_submissions",
                        to="fiskalizacija.fiscalsubmission",
                    ),
                ),
            ],
            options={
                "verbose_name": "Fiscal submission",
                "verbose_name_plural": "Fiscal submissions",
                "ordering": ["-created_at"],
            },
        ),
        migrations.AddIndex(
            model_name="fiscalsubmission",
            index=models.Index(
                fields=["invoice_number", "business_space_code", "cash_register_code", "invoice_date"],
                name="fiscal_identity_idx",
            ),
        ),
        migrations.AddIndex(
            model_name="fiscalsubmission",
            index=models.Index(fields=["status", "created_at"], name="fiscal_status_created_idx"),
        ),
        migrations.AddConstraint(
            model_name="fiscalsubmission",
            constraint=models.UniqueConstraint(
                condition=models.Q(("status", "ACCEPTED")),
                fields=("invoice_number", "business_space_code", "cash_register_code", "invoice_date"),
                name="fiscal_identity_accepted_uniq",
            ),
        ),
    ]
