import django.db.models.deletion
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='ServiceRequest',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('service_type', models.CharField(choices=[('towing', 'Towing'), ('tire', 'Mobile Tire Service'), ('mechanical', 'Mobile Mechanic'), ('locksmith', 'Automotive Locksmith')], max_length=20)),
                ('vehicle_type', models.CharField(blank=True, max_length=50)),
                ('origin_latitude', models.DecimalField(decimal_places=6, max_digits=9)),
                ('origin_longitude', models.DecimalField(decimal_places=6, max_digits=9)),
                ('origin_address', models.TextField()),
                ('destination_latitude', models.DecimalField(blank=True, decimal_places=6, max_digits=9, null=True)),
                ('destination_longitude', models.DecimalField(blank=True, decimal_places=6, max_digits=9, null=True)),
                ('destination_address', models.TextField(blank=True, null=True)),
                ('status', models.CharField(choices=[('idle', 'Idle'), ('searching', 'Searching'), ('accepted', 'Accepted'), ('negotiating', 'Negotiating'), ('awaiting_payment', 'Awaiting Payment'), ('in_service', 'In Service'), ('pending_client_confirmation', 'Pending Client Confirmation'), ('finished', 'Finished'), ('canceled', 'Canceled')], default='idle', max_length=30)),
                ('status_sequence', models.PositiveIntegerField(default=0)),
                ('proposed_value', models.DecimalField(blank=True, decimal_places=2, max_digits=10, null=True)),
                ('last_proposal_by', models.CharField(choices=[('none', 'Nobody'), ('client', 'Client'), ('provider', 'Provider')], default='none', max_length=10)),
                ('value_accepted', models.BooleanField(default=False)),
                ('agreed_value', models.DecimalField(blank=True, decimal_places=2, max_digits=10, null=True)),
                ('payment_method', models.CharField(blank=True, choices=[('card', 'Card'), ('instant_transfer', 'Instant Transfer'), ('wallet', 'Wallet'), ('direct_to_provider', 'Direct to Provider')], max_length=20, null=True)),
                ('payment_status', models.CharField(choices=[('none', 'Not Started'), ('pending', 'Pending'), ('confirming', 'Confirming'), ('failed', 'Failed'), ('paid', 'Paid')], default='none', max_length=20)),
                ('payment_confirmed', models.BooleanField(default=False)),
                ('direct_payment', models.BooleanField(default=False)),
                ('excluded_provider_ids', models.JSONField(blank=True, default=list)),
                ('cancel_reason_category', models.CharField(blank=True, choices=[('changed_mind', 'Changed my mind'), ('found_alternative', 'Found another solution'), ('wait_time_too_long', 'Wait time too long'), ('price_disagreement', 'Did not agree with the price'), ('emergency_resolved', 'Problem was solved'), ('unavailable', 'Not available right now'), ('location_too_far', 'Location too far'), ('vehicle_issue', 'Problem with my vehicle'), ('emergency', 'Personal emergency'), ('incorrect_info', 'Incorrect client information'), ('payment_timeout', 'Payment was not completed in time'), ('auto_canceled', 'Canceled by the platform'), ('other', 'Other')], max_length=30)),
                ('cancel_reason_text', models.TextField(blank=True)),
                ('canceled_by', models.CharField(blank=True, choices=[('client', 'Client'), ('provider', 'Provider'), ('system', 'System')], max_length=10)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField()),
                ('accepted_at', models.DateTimeField(blank=True, null=True)),
                ('provider_finished_at', models.DateTimeField(blank=True, null=True)),
                ('finished_at', models.DateTimeField(blank=True, null=True)),
                ('canceled_at', models.DateTimeField(blank=True, null=True)),
                ('acknowledged_at', models.DateTimeField(blank=True, null=True)),
                ('auto_finished', models.BooleanField(default=False)),
                ('client', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='service_requests', to=settings.AUTH_USER_MODEL)),
                ('provider', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='assigned_requests', to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'db_table': 'service_requests',
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['status'], name='service_req_status_3c1a2e_idx'),
                    models.Index(fields=['client', 'status'], name='service_req_client__8f0b51_idx'),
                    models.Index(fields=['provider', 'status'], name='service_req_provide_d2e7a4_idx'),
                ],
            },
        ),
        migrations.CreateModel(
            name='SearchSession',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('attempt', models.PositiveIntegerField(default=1)),
                ('radius_ladder', models.JSONField()),
                ('current_index', models.PositiveIntegerField(default=0)),
                ('state', models.CharField(choices=[('idle', 'Idle'), ('searching', 'Searching'), ('expanding_radius', 'Expanding Radius'), ('waiting_cooldown', 'Waiting Cooldown'), ('provider_found', 'Provider Found'), ('timeout', 'Timeout'), ('canceled', 'Canceled')], default='idle', max_length=20)),
                ('excluded_provider_ids', models.JSONField(blank=True, default=list)),
                ('offered_provider_ids', models.JSONField(blank=True, default=list)),
                ('step_token', models.PositiveIntegerField(default=0)),
                ('stage_started_at', models.DateTimeField(blank=True, null=True)),
                ('cooldown_deadline', models.DateTimeField(blank=True, null=True)),
                ('last_query_at', models.DateTimeField(blank=True, null=True)),
                ('last_found_count', models.PositiveIntegerField(default=0)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('closed_at', models.DateTimeField(blank=True, null=True)),
                ('request', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='search_sessions', to='chamados.servicerequest')),
            ],
            options={
                'db_table': 'search_sessions',
                'ordering': ['-created_at'],
            },
        ),
        migrations.CreateModel(
            name='ChatMessage',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('sender_type', models.CharField(choices=[('client', 'Client'), ('provider', 'Provider'), ('system', 'System')], max_length=10)),
                ('message', models.TextField()),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('request', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='chat_messages', to='chamados.servicerequest')),
                ('sender', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, to=settings.AUTH_USER_MODEL)),
            ],
            options={
                'db_table': 'chat_messages',
                'ordering': ['created_at', 'id'],
            },
        ),
        migrations.CreateModel(
            name='PaymentAttempt',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('method', models.CharField(choices=[('card', 'Card'), ('instant_transfer', 'Instant Transfer'), ('wallet', 'Wallet'), ('direct_to_provider', 'Direct to Provider')], max_length=20)),
                ('amount', models.DecimalField(decimal_places=2, max_digits=10)),
                ('gateway_reference', models.CharField(blank=True, max_length=255)),
                ('checkout_url', models.TextField(blank=True)),
                ('client_secret', models.CharField(blank=True, max_length=255)),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('confirming', 'Confirming'), ('succeeded', 'Succeeded'), ('failed', 'Failed'), ('superseded', 'Superseded')], default='pending', max_length=20)),
                ('confirmed_via', models.CharField(blank=True, choices=[('client', 'Synchronous client confirmation'), ('push', 'Gateway push'), ('poll', 'Status polling'), ('direct', 'Direct payment')], max_length=10)),
                ('failure_reason', models.TextField(blank=True)),
                ('poll_started_at', models.DateTimeField(blank=True, null=True)),
                ('poll_count', models.PositiveIntegerField(default=0)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('confirmed_at', models.DateTimeField(blank=True, null=True)),
                ('request', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='payment_attempts', to='chamados.servicerequest')),
            ],
            options={
                'db_table': 'payment_attempts',
                'ordering': ['-created_at'],
            },
        ),
        migrations.CreateModel(
            name='StatusEvent',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('sequence', models.PositiveIntegerField()),
                ('from_status', models.CharField(max_length=30)),
                ('to_status', models.CharField(max_length=30)),
                ('actor', models.CharField(choices=[('client', 'Client'), ('provider', 'Provider'), ('system', 'System')], max_length=10)),
                ('note', models.CharField(blank=True, max_length=255)),
                ('created_at', models.DateTimeField()),
                ('request', models.ForeignKey(on_delete=django.db.models.deletion.CASCADE, related_name='status_events', to='chamados.servicerequest')),
            ],
            options={
                'db_table': 'status_events',
                'ordering': ['request', 'sequence'],
                'constraints': [models.UniqueConstraint(fields=('request', 'sequence'), name='unique_request_sequence')],
            },
        ),
    ]
