import django.db.models.deletion
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="WebhookEvent",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("external_event_id", models.CharField(db_index=True, max_length=255, unique=True)),
                ("event_name", models.CharField(db_index=True, max_length=100)),
                ("payload", models.JSONField(default=dict)),
                ("processed", models.BooleanField(db_index=True, default=False)),
                ("processed_at", models.DateTimeField(blank=True, null=True)),
                ("error", models.TextField(blank=True, null=True)),
                ("error_count", models.PositiveIntegerField(default=0)),
                ("created_at", models.DateTimeField(auto_now_add=True, db_index=True)),
            ],
            options={
                "db_table": "webhook_events",
            },
        ),
        migrations.CreateModel(
            name="WebhookQueueItem",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("retry_count", models.PositiveIntegerField(default=1)),
                ("next_retry", models.DateTimeField(db_index=True)),
                ("last_error", models.TextField(blank=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "webhook_event",
                    models.OneToOneField(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="queue_item",
                        to="core.webhookevent",
                    ),
                ),
            ],
            options={
                "db_table": "webhook_queue",
            },
        ),
    ]
