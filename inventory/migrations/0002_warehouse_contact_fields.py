import django.core.validators
from django.db import migrations, models


class Migration(migrations.Migration):
    dependencies = [
        ("inventory", "0001_initial"),
    ]

    operations = [
        migrations.AddField(
            model_name="warehouse",
            name="contact_person",
            field=models.CharField(blank=True, default="", max_length=255),
        ),
        migrations.AddField(
            model_name="warehouse",
            name="phone",
            field=models.CharField(
                blank=True,
                default="",
                max_length=64,
                validators=[
                    django.core.validators.RegexValidator("^[\\d\\s\\-+()]+$", "Enter a valid phone number.")
                ],
            ),
        ),
        migrations.AddField(
            model_name="warehouse",
            name="email",
            field=models.EmailField(blank=True, default="", max_length=254),
        ),
        migrations.AddField(
            model_name="warehouse",
            name="capacity",
            field=models.PositiveIntegerField(default=0),
        ),
    ]
