"""Alembic migration — create the shipment engine schema.

Statuses are stored as VARCHAR(30), never database enum types. Constraint
and index names follow the naming convention on ``Base.metadata`` so later
autogenerated revisions diff cleanly.
"""

from alembic import op

# revision identifiers
revision = "001_create_shipment_engine"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # ── Network and fleet ───────────────────────────────────────────────
    op.execute("""
        CREATE TABLE branches (
            id              UUID            CONSTRAINT pk_branches PRIMARY KEY,
            code            VARCHAR(30)     NOT NULL CONSTRAINT uq_branches_code UNIQUE,
            name            VARCHAR(120)    NOT NULL,
            province_code   VARCHAR(10),
            is_active       BOOLEAN         NOT NULL DEFAULT TRUE,
            created_at      TIMESTAMPTZ     NOT NULL DEFAULT now()
        );
    """)
    op.execute("CREATE INDEX ix_branches_province_code ON branches (province_code);")

    op.execute("""
        CREATE TABLE vehicles (
            id              UUID            CONSTRAINT pk_vehicles PRIMARY KEY,
            code            VARCHAR(30)     NOT NULL CONSTRAINT uq_vehicles_code UNIQUE,
            vehicle_type    VARCHAR(50)     NOT NULL,
            max_load_kg     NUMERIC(10, 2)  NOT NULL,
            max_volume_m3   NUMERIC(10, 3),
            route_scope     VARCHAR(30),
            is_active       BOOLEAN         NOT NULL DEFAULT TRUE,
            created_at      TIMESTAMPTZ     NOT NULL DEFAULT now()
        );
    """)

    op.execute("""
        CREATE TABLE drivers (
            id                  UUID            CONSTRAINT pk_drivers PRIMARY KEY,
            code                VARCHAR(30)     NOT NULL CONSTRAINT uq_drivers_code UNIQUE,
            full_name           VARCHAR(120)    NOT NULL,
            phone_number        VARCHAR(20),
            branch_id           UUID            CONSTRAINT fk_drivers_branch_id_branches
                                                REFERENCES branches(id) ON DELETE CASCADE,
            vehicle_id          UUID            CONSTRAINT fk_drivers_vehicle_id_vehicles
                                                REFERENCES vehicles(id) ON DELETE SET NULL,
            max_active_orders   INTEGER         NOT NULL DEFAULT 3,
            is_active           BOOLEAN         NOT NULL DEFAULT TRUE,
            created_at          TIMESTAMPTZ     NOT NULL DEFAULT now()
        );
    """)
    op.execute("CREATE INDEX ix_drivers_branch_id  ON drivers (branch_id);")
    op.execute("CREATE INDEX ix_drivers_vehicle_id ON drivers (vehicle_id);")

    # ── Shipments ───────────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE shipments (
            id                      UUID            CONSTRAINT pk_shipments PRIMARY KEY,
            tracking_code           VARCHAR(50)     NOT NULL
                                                    CONSTRAINT uq_shipments_tracking_code UNIQUE,
            sender_name             VARCHAR(120),
            sender_phone            VARCHAR(20),
            sender_address_text     TEXT            NOT NULL,
            sender_province_code    VARCHAR(10),
            receiver_name           VARCHAR(120),
            receiver_phone          VARCHAR(20),
            receiver_address_text   TEXT            NOT NULL,
            receiver_province_code  VARCHAR(10),
            service_type            VARCHAR(30)     NOT NULL DEFAULT 'STANDARD',
            goods_type              VARCHAR(50)     NOT NULL DEFAULT 'GENERAL',
            declared_value          NUMERIC(12, 2)  NOT NULL DEFAULT 0,
            total_weight_kg         NUMERIC(10, 2)  NOT NULL,
            total_volume_m3         NUMERIC(10, 3),
            parcel_length_cm        NUMERIC(10, 2),
            parcel_width_cm         NUMERIC(10, 2),
            parcel_height_cm        NUMERIC(10, 2),
            route_scope             VARCHAR(30)     NOT NULL,
            shipment_status         VARCHAR(30)     NOT NULL DEFAULT 'BOOKED',
            pre_issue_status        VARCHAR(30),
            assigned_branch_id      UUID            CONSTRAINT fk_shipments_assigned_branch_id_branches
                                                    REFERENCES branches(id) ON DELETE SET NULL,
            assigned_vehicle_id     UUID            CONSTRAINT fk_shipments_assigned_vehicle_id_vehicles
                                                    REFERENCES vehicles(id) ON DELETE SET NULL,
            assigned_by             VARCHAR(100),
            assigned_at             TIMESTAMPTZ,
            quoted_amount           NUMERIC(12, 2),
            confirmed_amount        NUMERIC(12, 2),
            delivered_at            TIMESTAMPTZ,
            closed_at               TIMESTAMPTZ,
            created_at              TIMESTAMPTZ     NOT NULL DEFAULT now(),
            updated_at              TIMESTAMPTZ     NOT NULL DEFAULT now(),
            version                 INTEGER         NOT NULL DEFAULT 1
        );
    """)
    op.execute("CREATE INDEX ix_shipments_status              ON shipments (shipment_status);")
    op.execute("CREATE INDEX ix_shipments_created_at          ON shipments (created_at);")
    op.execute("CREATE INDEX ix_shipments_assigned_branch_id  ON shipments (assigned_branch_id);")
    op.execute("CREATE INDEX ix_shipments_assigned_vehicle_id ON shipments (assigned_vehicle_id);")

    op.execute("""
        CREATE TABLE shipment_status_history (
            id          UUID            CONSTRAINT pk_shipment_status_history PRIMARY KEY,
            shipment_id UUID            NOT NULL
                                        CONSTRAINT fk_shipment_status_history_shipment_id_shipments
                                        REFERENCES shipments(id) ON DELETE CASCADE,
            old_status  VARCHAR(30),
            new_status  VARCHAR(30)     NOT NULL,
            actor_type  VARCHAR(20)     NOT NULL,
            actor_id    VARCHAR(100),
            message     TEXT,
            payload     JSONB,
            event_at    TIMESTAMPTZ     NOT NULL
        );
    """)
    op.execute(
        "CREATE INDEX ix_shipment_status_history_shipment_id "
        "ON shipment_status_history (shipment_id);"
    )
    op.execute(
        "CREATE INDEX ix_shipment_status_history_event_at ON shipment_status_history (event_at);"
    )

    # ── Vehicle capacity ────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE vehicle_load_tracking (
            vehicle_id          UUID            CONSTRAINT pk_vehicle_load_tracking PRIMARY KEY
                                                CONSTRAINT fk_vehicle_load_tracking_vehicle_id_vehicles
                                                REFERENCES vehicles(id) ON DELETE CASCADE,
            current_load_kg     NUMERIC(10, 2)  NOT NULL DEFAULT 0,
            current_volume_m3   NUMERIC(10, 3)  NOT NULL DEFAULT 0,
            current_order_count INTEGER         NOT NULL DEFAULT 0,
            updated_at          TIMESTAMPTZ     NOT NULL DEFAULT now(),
            version             INTEGER         NOT NULL DEFAULT 1
        );
    """)

    op.execute("""
        CREATE TABLE capacity_reservations (
            id          UUID            CONSTRAINT pk_capacity_reservations PRIMARY KEY,
            vehicle_id  UUID            NOT NULL
                                        CONSTRAINT fk_capacity_reservations_vehicle_id_vehicles
                                        REFERENCES vehicles(id) ON DELETE CASCADE,
            shipment_id UUID            NOT NULL
                                        CONSTRAINT fk_capacity_reservations_shipment_id_shipments
                                        REFERENCES shipments(id) ON DELETE CASCADE,
            purpose     VARCHAR(30)     NOT NULL,
            load_kg     NUMERIC(10, 2)  NOT NULL,
            volume_m3   NUMERIC(10, 3)  NOT NULL DEFAULT 0,
            status      VARCHAR(30)     NOT NULL DEFAULT 'RESERVED',
            reserved_at TIMESTAMPTZ     NOT NULL,
            released_at TIMESTAMPTZ
        );
    """)
    op.execute(
        "CREATE INDEX ix_capacity_reservations_vehicle_id ON capacity_reservations (vehicle_id);"
    )
    op.execute(
        "CREATE INDEX ix_capacity_reservations_shipment_id ON capacity_reservations (shipment_id);"
    )
    op.execute(
        "CREATE INDEX ix_capacity_reservations_status "
        "ON capacity_reservations (vehicle_id, status);"
    )

    op.execute("""
        CREATE TABLE shipment_vehicle_assignment_logs (
            id          UUID            CONSTRAINT pk_shipment_vehicle_assignment_logs PRIMARY KEY,
            shipment_id UUID            NOT NULL
                                        CONSTRAINT fk_shipment_vehicle_assignment_logs_shipment_id_shipments
                                        REFERENCES shipments(id) ON DELETE CASCADE,
            vehicle_id  UUID            NOT NULL
                                        CONSTRAINT fk_shipment_vehicle_assignment_logs_vehicle_id_vehicles
                                        REFERENCES vehicles(id) ON DELETE CASCADE,
            branch_id   UUID            CONSTRAINT fk_shipment_vehicle_assignment_logs_branch_id_branches
                                        REFERENCES branches(id) ON DELETE CASCADE,
            purpose     VARCHAR(20)     NOT NULL,
            assigned_by VARCHAR(100),
            assigned_at TIMESTAMPTZ     NOT NULL,
            note        TEXT,
            CONSTRAINT uq_sval_shipment_vehicle_branch_assigned_at
                UNIQUE (shipment_id, vehicle_id, branch_id, assigned_at)
        );
    """)
    op.execute(
        "CREATE INDEX ix_shipment_vehicle_assignment_logs_shipment_id "
        "ON shipment_vehicle_assignment_logs (shipment_id);"
    )
    op.execute(
        "CREATE INDEX ix_shipment_vehicle_assignment_logs_vehicle_id "
        "ON shipment_vehicle_assignment_logs (vehicle_id);"
    )

    # ── Driver assignments ──────────────────────────────────────────────
    op.execute("""
        CREATE TABLE driver_assignments (
            id                  UUID            CONSTRAINT pk_driver_assignments PRIMARY KEY,
            shipment_id         UUID            NOT NULL
                                                CONSTRAINT fk_driver_assignments_shipment_id_shipments
                                                REFERENCES shipments(id) ON DELETE CASCADE,
            assignment_type     VARCHAR(30)     NOT NULL,
            branch_id           UUID            CONSTRAINT fk_driver_assignments_branch_id_branches
                                                REFERENCES branches(id) ON DELETE SET NULL,
            driver_id           UUID            NOT NULL
                                                CONSTRAINT fk_driver_assignments_driver_id_drivers
                                                REFERENCES drivers(id) ON DELETE CASCADE,
            vehicle_id          UUID            CONSTRAINT fk_driver_assignments_vehicle_id_vehicles
                                                REFERENCES vehicles(id) ON DELETE SET NULL,
            reservation_id      UUID            CONSTRAINT fk_driver_assignments_reservation_id_capacity_reservations
                                                REFERENCES capacity_reservations(id) ON DELETE SET NULL,
            status              VARCHAR(30)     NOT NULL DEFAULT 'ASSIGNED',
            assigned_by_type    VARCHAR(20)     NOT NULL DEFAULT 'SYSTEM',
            assigned_by         VARCHAR(100),
            assigned_at         TIMESTAMPTZ     NOT NULL,
            accepted_at         TIMESTAMPTZ,
            started_at          TIMESTAMPTZ,
            completed_at        TIMESTAMPTZ,
            cancelled_at        TIMESTAMPTZ,
            note                TEXT,
            is_active           BOOLEAN         NOT NULL DEFAULT TRUE,
            created_at          TIMESTAMPTZ     NOT NULL DEFAULT now(),
            updated_at          TIMESTAMPTZ     NOT NULL DEFAULT now()
        );
    """)
    op.execute("CREATE INDEX ix_driver_assignments_shipment_id ON driver_assignments (shipment_id);")
    op.execute("CREATE INDEX ix_driver_assignments_driver_id   ON driver_assignments (driver_id);")
    op.execute(
        "CREATE INDEX ix_driver_assignments_driver_status "
        "ON driver_assignments (driver_id, status);"
    )
    # One active row per (shipment, leg)
    op.execute(
        "CREATE UNIQUE INDEX uq_driver_assignments_active_leg "
        "ON driver_assignments (shipment_id, assignment_type) WHERE is_active;"
    )

    op.execute("""
        CREATE TABLE driver_assignment_history (
            id              UUID            CONSTRAINT pk_driver_assignment_history PRIMARY KEY,
            assignment_id   UUID            NOT NULL
                                            CONSTRAINT fk_driver_assignment_history_assignment_id_driver_assignments
                                            REFERENCES driver_assignments(id) ON DELETE CASCADE,
            shipment_id     UUID            NOT NULL
                                            CONSTRAINT fk_driver_assignment_history_shipment_id_shipments
                                            REFERENCES shipments(id) ON DELETE CASCADE,
            assignment_type VARCHAR(20)     NOT NULL,
            old_driver_id   UUID,
            new_driver_id   UUID,
            old_status      VARCHAR(30),
            new_status      VARCHAR(30),
            change_action   VARCHAR(50)     NOT NULL,
            changed_by_type VARCHAR(20)     NOT NULL,
            changed_by      VARCHAR(100),
            changed_at      TIMESTAMPTZ     NOT NULL,
            note            TEXT
        );
    """)
    op.execute(
        "CREATE INDEX ix_driver_assignment_history_assignment_id "
        "ON driver_assignment_history (assignment_id);"
    )
    op.execute(
        "CREATE INDEX ix_driver_assignment_history_shipment_id "
        "ON driver_assignment_history (shipment_id);"
    )
    op.execute(
        "CREATE INDEX ix_driver_assignment_history_changed_at "
        "ON driver_assignment_history (changed_at);"
    )

    # ── Payments ────────────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE payment_intents (
            id                          UUID            CONSTRAINT pk_payment_intents PRIMARY KEY,
            shipment_id                 UUID            NOT NULL
                                                        CONSTRAINT fk_payment_intents_shipment_id_shipments
                                                        REFERENCES shipments(id) ON DELETE CASCADE,
            currency                    VARCHAR(3)      NOT NULL DEFAULT 'VND',
            method                      VARCHAR(30)     NOT NULL,
            provider                    VARCHAR(50),
            status                      VARCHAR(30)     NOT NULL DEFAULT 'PENDING',
            amount                      NUMERIC(12, 2)  NOT NULL,
            amount_paid                 NUMERIC(12, 2)  NOT NULL DEFAULT 0,
            reference_code              VARCHAR(100),
            provider_txn_id             VARCHAR(200),
            expires_at                  TIMESTAMPTZ,
            confirmed_at                TIMESTAMPTZ,
            failed_at                   TIMESTAMPTZ,
            fallback_payment_intent_id  UUID
                                        CONSTRAINT uq_payment_intents_fallback_payment_intent_id UNIQUE
                                        CONSTRAINT fk_payment_intents_fallback_payment_intent_id_payment_intents
                                        REFERENCES payment_intents(id) ON DELETE SET NULL,
            note                        TEXT,
            created_at                  TIMESTAMPTZ     NOT NULL DEFAULT now(),
            updated_at                  TIMESTAMPTZ     NOT NULL DEFAULT now()
        );
    """)
    op.execute("CREATE INDEX ix_payment_intents_shipment_id ON payment_intents (shipment_id);")
    op.execute(
        "CREATE INDEX ix_payment_intents_status_expires ON payment_intents (status, expires_at);"
    )
    # At most one PENDING intent per shipment
    op.execute(
        "CREATE UNIQUE INDEX uq_payment_intents_open_per_shipment "
        "ON payment_intents (shipment_id) WHERE status = 'PENDING';"
    )

    op.execute("""
        CREATE TABLE payment_event_log (
            id                  UUID            CONSTRAINT pk_payment_event_log PRIMARY KEY,
            payment_intent_id   UUID            NOT NULL
                                                CONSTRAINT fk_payment_event_log_payment_intent_id_payment_intents
                                                REFERENCES payment_intents(id) ON DELETE CASCADE,
            shipment_id         UUID            NOT NULL
                                                CONSTRAINT fk_payment_event_log_shipment_id_shipments
                                                REFERENCES shipments(id) ON DELETE CASCADE,
            event_type          VARCHAR(50)     NOT NULL,
            old_status          VARCHAR(30),
            new_status          VARCHAR(30),
            actor_type          VARCHAR(20),
            actor_id            VARCHAR(100),
            message             TEXT,
            raw_payload         JSONB,
            event_at            TIMESTAMPTZ     NOT NULL
        );
    """)
    op.execute(
        "CREATE INDEX ix_payment_event_log_payment_intent_id "
        "ON payment_event_log (payment_intent_id);"
    )
    op.execute("CREATE INDEX ix_payment_event_log_shipment_id ON payment_event_log (shipment_id);")
    op.execute("CREATE INDEX ix_payment_event_log_event_at    ON payment_event_log (event_at);")

    # ── Transit manifests ───────────────────────────────────────────────
    op.execute("""
        CREATE TABLE transit_manifests (
            id                  UUID            CONSTRAINT pk_transit_manifests PRIMARY KEY,
            manifest_code       VARCHAR(50)     NOT NULL
                                                CONSTRAINT uq_transit_manifests_manifest_code UNIQUE,
            vehicle_id          UUID            NOT NULL
                                                CONSTRAINT fk_transit_manifests_vehicle_id_vehicles
                                                REFERENCES vehicles(id) ON DELETE CASCADE,
            driver_id           UUID            CONSTRAINT fk_transit_manifests_driver_id_drivers
                                                REFERENCES drivers(id) ON DELETE CASCADE,
            origin_branch_id    UUID            NOT NULL
                                                CONSTRAINT fk_transit_manifests_origin_branch_id_branches
                                                REFERENCES branches(id) ON DELETE CASCADE,
            dest_branch_id      UUID            NOT NULL
                                                CONSTRAINT fk_transit_manifests_dest_branch_id_branches
                                                REFERENCES branches(id) ON DELETE CASCADE,
            route_scope         VARCHAR(30)     NOT NULL,
            status              VARCHAR(30)     NOT NULL DEFAULT 'OPEN',
            created_by_type     VARCHAR(20),
            created_by          VARCHAR(100),
            created_at          TIMESTAMPTZ     NOT NULL DEFAULT now(),
            loaded_at           TIMESTAMPTZ,
            departed_at         TIMESTAMPTZ,
            arrived_at          TIMESTAMPTZ,
            closed_at           TIMESTAMPTZ,
            note                TEXT
        );
    """)
    op.execute("CREATE INDEX ix_transit_manifests_vehicle_id ON transit_manifests (vehicle_id);")
    op.execute("CREATE INDEX ix_transit_manifests_driver_id  ON transit_manifests (driver_id);")
    op.execute(
        "CREATE INDEX ix_transit_manifests_origin_branch_id ON transit_manifests (origin_branch_id);"
    )
    op.execute(
        "CREATE INDEX ix_transit_manifests_dest_branch_id ON transit_manifests (dest_branch_id);"
    )
    op.execute("CREATE INDEX ix_transit_manifests_status ON transit_manifests (status);")

    op.execute("""
        CREATE TABLE transit_manifest_items (
            id              UUID            CONSTRAINT pk_transit_manifest_items PRIMARY KEY,
            manifest_id     UUID            NOT NULL
                                            CONSTRAINT fk_transit_manifest_items_manifest_id_transit_manifests
                                            REFERENCES transit_manifests(id) ON DELETE CASCADE,
            shipment_id     UUID            NOT NULL
                                            CONSTRAINT fk_transit_manifest_items_shipment_id_shipments
                                            REFERENCES shipments(id) ON DELETE CASCADE,
            reservation_id  UUID            CONSTRAINT fk_transit_manifest_items_reservation_id_capacity_reservations
                                            REFERENCES capacity_reservations(id) ON DELETE SET NULL,
            item_status     VARCHAR(30)     NOT NULL DEFAULT 'ADDED',
            added_at        TIMESTAMPTZ     NOT NULL,
            removed_at      TIMESTAMPTZ,
            note            TEXT
        );
    """)
    op.execute(
        "CREATE INDEX ix_transit_manifest_items_manifest_id ON transit_manifest_items (manifest_id);"
    )
    op.execute(
        "CREATE INDEX ix_transit_manifest_items_shipment_id ON transit_manifest_items (shipment_id);"
    )
    op.execute(
        "CREATE INDEX ix_transit_manifest_items_shipment_status "
        "ON transit_manifest_items (shipment_id, item_status);"
    )

    op.execute("""
        CREATE TABLE transit_manifest_events (
            id          UUID            CONSTRAINT pk_transit_manifest_events PRIMARY KEY,
            manifest_id UUID            NOT NULL
                                        CONSTRAINT fk_transit_manifest_events_manifest_id_transit_manifests
                                        REFERENCES transit_manifests(id) ON DELETE CASCADE,
            event_type  VARCHAR(50)     NOT NULL,
            old_status  VARCHAR(30),
            new_status  VARCHAR(30),
            actor_type  VARCHAR(20),
            actor_id    VARCHAR(100),
            message     TEXT,
            event_at    TIMESTAMPTZ     NOT NULL
        );
    """)
    op.execute(
        "CREATE INDEX ix_transit_manifest_events_manifest_id "
        "ON transit_manifest_events (manifest_id);"
    )
    op.execute(
        "CREATE INDEX ix_transit_manifest_events_event_at ON transit_manifest_events (event_at);"
    )

    # ── Returns ─────────────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE return_orders (
            id                      UUID            CONSTRAINT pk_return_orders PRIMARY KEY,
            original_shipment_id    UUID            NOT NULL
                                                    CONSTRAINT fk_return_orders_original_shipment_id_shipments
                                                    REFERENCES shipments(id) ON DELETE CASCADE,
            return_shipment_id      UUID            CONSTRAINT fk_return_orders_return_shipment_id_shipments
                                                    REFERENCES shipments(id) ON DELETE SET NULL,
            reason_code             VARCHAR(30)     NOT NULL,
            reason_note             TEXT,
            route_scope             VARCHAR(30),
            origin_branch_id        UUID            CONSTRAINT fk_return_orders_origin_branch_id_branches
                                                    REFERENCES branches(id) ON DELETE CASCADE,
            current_branch_id       UUID            CONSTRAINT fk_return_orders_current_branch_id_branches
                                                    REFERENCES branches(id) ON DELETE SET NULL,
            status                  VARCHAR(30)     NOT NULL DEFAULT 'CREATED',
            created_by_type         VARCHAR(20),
            created_by              VARCHAR(100),
            created_at              TIMESTAMPTZ     NOT NULL DEFAULT now(),
            updated_at              TIMESTAMPTZ     NOT NULL DEFAULT now()
        );
    """)
    op.execute(
        "CREATE INDEX ix_return_orders_original_shipment_id ON return_orders (original_shipment_id);"
    )
    op.execute(
        "CREATE INDEX ix_return_orders_return_shipment_id ON return_orders (return_shipment_id);"
    )
    op.execute("CREATE INDEX ix_return_orders_status ON return_orders (status);")

    op.execute("""
        CREATE TABLE return_policy_holds (
            id                      UUID            CONSTRAINT pk_return_policy_holds PRIMARY KEY,
            return_order_id         UUID            NOT NULL
                                                    CONSTRAINT uq_return_policy_holds_return_order_id UNIQUE
                                                    CONSTRAINT fk_return_policy_holds_return_order_id_return_orders
                                                    REFERENCES return_orders(id) ON DELETE CASCADE,
            original_shipment_id    UUID            NOT NULL
                                                    CONSTRAINT fk_return_policy_holds_original_shipment_id_shipments
                                                    REFERENCES shipments(id) ON DELETE CASCADE,
            policy                  VARCHAR(30)     NOT NULL,
            hold_start_at           TIMESTAMPTZ     NOT NULL,
            hold_until_at           TIMESTAMPTZ     NOT NULL,
            pickup_by_customer_at   TIMESTAMPTZ,
            disposed_at             TIMESTAMPTZ,
            final_action            VARCHAR(30),
            decided_at              TIMESTAMPTZ,
            decided_by_type         VARCHAR(20),
            decided_by              VARCHAR(100),
            note                    TEXT
        );
    """)
    op.execute(
        "CREATE INDEX ix_return_policy_holds_original_shipment_id "
        "ON return_policy_holds (original_shipment_id);"
    )

    op.execute("""
        CREATE TABLE return_event_log (
            id                      UUID            CONSTRAINT pk_return_event_log PRIMARY KEY,
            return_order_id         UUID            NOT NULL
                                                    CONSTRAINT fk_return_event_log_return_order_id_return_orders
                                                    REFERENCES return_orders(id) ON DELETE CASCADE,
            original_shipment_id    UUID            NOT NULL
                                                    CONSTRAINT fk_return_event_log_original_shipment_id_shipments
                                                    REFERENCES shipments(id) ON DELETE CASCADE,
            event_type              VARCHAR(50)     NOT NULL,
            old_status              VARCHAR(30),
            new_status              VARCHAR(30),
            actor_type              VARCHAR(20),
            actor_id                VARCHAR(100),
            message                 TEXT,
            raw_payload             JSONB,
            event_at                TIMESTAMPTZ     NOT NULL
        );
    """)
    op.execute(
        "CREATE INDEX ix_return_event_log_return_order_id ON return_event_log (return_order_id);"
    )
    op.execute(
        "CREATE INDEX ix_return_event_log_original_shipment_id "
        "ON return_event_log (original_shipment_id);"
    )
    op.execute("CREATE INDEX ix_return_event_log_event_at ON return_event_log (event_at);")

    # ── Operations ──────────────────────────────────────────────────────
    op.execute("""
        CREATE TABLE admin_tasks (
            id                  UUID            CONSTRAINT pk_admin_tasks PRIMARY KEY,
            task_code           VARCHAR(40)     NOT NULL CONSTRAINT uq_admin_tasks_task_code UNIQUE,
            task_type           VARCHAR(30)     NOT NULL,
            priority            INTEGER         NOT NULL DEFAULT 50,
            status              VARCHAR(30)     NOT NULL DEFAULT 'OPEN',
            shipment_id         UUID            CONSTRAINT fk_admin_tasks_shipment_id_shipments
                                                REFERENCES shipments(id) ON DELETE CASCADE,
            branch_id           UUID            CONSTRAINT fk_admin_tasks_branch_id_branches
                                                REFERENCES branches(id) ON DELETE SET NULL,
            driver_id           UUID            CONSTRAINT fk_admin_tasks_driver_id_drivers
                                                REFERENCES drivers(id) ON DELETE SET NULL,
            vehicle_id          UUID            CONSTRAINT fk_admin_tasks_vehicle_id_vehicles
                                                REFERENCES vehicles(id) ON DELETE SET NULL,
            manifest_id         UUID            CONSTRAINT fk_admin_tasks_manifest_id_transit_manifests
                                                REFERENCES transit_manifests(id) ON DELETE SET NULL,
            return_order_id     UUID            CONSTRAINT fk_admin_tasks_return_order_id_return_orders
                                                REFERENCES return_orders(id) ON DELETE SET NULL,
            payment_intent_id   UUID            CONSTRAINT fk_admin_tasks_payment_intent_id_payment_intents
                                                REFERENCES payment_intents(id) ON DELETE SET NULL,
            title               VARCHAR(200)    NOT NULL,
            description         TEXT,
            due_at              TIMESTAMPTZ,
            created_by_type     VARCHAR(20)     NOT NULL DEFAULT 'SYSTEM',
            created_by          VARCHAR(100),
            resolved_by_type    VARCHAR(20),
            resolved_by         VARCHAR(100),
            resolved_at         TIMESTAMPTZ,
            resolution_code     VARCHAR(50),
            resolution_note     TEXT,
            created_at          TIMESTAMPTZ     NOT NULL DEFAULT now(),
            updated_at          TIMESTAMPTZ     NOT NULL DEFAULT now()
        );
    """)
    op.execute("CREATE INDEX ix_admin_tasks_task_type   ON admin_tasks (task_type);")
    op.execute("CREATE INDEX ix_admin_tasks_shipment_id ON admin_tasks (shipment_id);")
    op.execute("CREATE INDEX ix_admin_tasks_status_type ON admin_tasks (status, task_type);")

    op.execute("""
        CREATE TABLE admin_task_events (
            id          UUID            CONSTRAINT pk_admin_task_events PRIMARY KEY,
            task_id     UUID            NOT NULL
                                        CONSTRAINT fk_admin_task_events_task_id_admin_tasks
                                        REFERENCES admin_tasks(id) ON DELETE CASCADE,
            event_type  VARCHAR(30)     NOT NULL,
            old_status  VARCHAR(30),
            new_status  VARCHAR(30),
            actor_type  VARCHAR(20),
            actor_id    VARCHAR(100),
            note        TEXT,
            payload     JSONB,
            event_at    TIMESTAMPTZ     NOT NULL
        );
    """)
    op.execute("CREATE INDEX ix_admin_task_events_task_id  ON admin_task_events (task_id);")
    op.execute("CREATE INDEX ix_admin_task_events_event_at ON admin_task_events (event_at);")

    op.execute("""
        CREATE TABLE pickup_schedules (
            id                  UUID            CONSTRAINT pk_pickup_schedules PRIMARY KEY,
            shipment_id         UUID            NOT NULL
                                                CONSTRAINT uq_pickup_schedules_shipment_id UNIQUE
                                                CONSTRAINT fk_pickup_schedules_shipment_id_shipments
                                                REFERENCES shipments(id) ON DELETE CASCADE,
            scheduled_start_at  TIMESTAMPTZ     NOT NULL,
            scheduled_end_at    TIMESTAMPTZ     NOT NULL,
            timezone            VARCHAR(50)     NOT NULL DEFAULT 'Asia/Ho_Chi_Minh',
            pickup_note         TEXT,
            updated_by_type     VARCHAR(20),
            updated_by          VARCHAR(100),
            created_at          TIMESTAMPTZ     NOT NULL DEFAULT now(),
            updated_at          TIMESTAMPTZ     NOT NULL DEFAULT now()
        );
    """)

    op.execute("""
        CREATE TABLE pickup_schedule_history (
            id              UUID            CONSTRAINT pk_pickup_schedule_history PRIMARY KEY,
            shipment_id     UUID            NOT NULL
                                            CONSTRAINT fk_pickup_schedule_history_shipment_id_shipments
                                            REFERENCES shipments(id) ON DELETE CASCADE,
            old_start_at    TIMESTAMPTZ,
            old_end_at      TIMESTAMPTZ,
            new_start_at    TIMESTAMPTZ     NOT NULL,
            new_end_at      TIMESTAMPTZ     NOT NULL,
            reason          TEXT,
            changed_by_type VARCHAR(20)     NOT NULL,
            changed_by      VARCHAR(100),
            changed_at      TIMESTAMPTZ     NOT NULL
        );
    """)
    op.execute(
        "CREATE INDEX ix_pickup_schedule_history_shipment_id "
        "ON pickup_schedule_history (shipment_id);"
    )
    op.execute(
        "CREATE INDEX ix_pickup_schedule_history_changed_at "
        "ON pickup_schedule_history (changed_at);"
    )

    op.execute("""
        CREATE TABLE call_logs (
            id          UUID            CONSTRAINT pk_call_logs PRIMARY KEY,
            shipment_id UUID            NOT NULL
                                        CONSTRAINT fk_call_logs_shipment_id_shipments
                                        REFERENCES shipments(id) ON DELETE CASCADE,
            call_type   VARCHAR(30)     NOT NULL,
            attempt_no  INTEGER         NOT NULL,
            outcome     VARCHAR(30)     NOT NULL,
            caller_type VARCHAR(20),
            caller_id   VARCHAR(100),
            note        TEXT,
            called_at   TIMESTAMPTZ     NOT NULL,
            CONSTRAINT uq_call_logs_attempt UNIQUE (shipment_id, call_type, attempt_no)
        );
    """)
    op.execute("CREATE INDEX ix_call_logs_shipment_id ON call_logs (shipment_id);")

    op.execute("""
        CREATE TABLE goods_inspections (
            id                      UUID            CONSTRAINT pk_goods_inspections PRIMARY KEY,
            shipment_id             UUID            NOT NULL
                                                    CONSTRAINT uq_goods_inspections_shipment_id UNIQUE
                                                    CONSTRAINT fk_goods_inspections_shipment_id_shipments
                                                    REFERENCES shipments(id) ON DELETE CASCADE,
            assignment_id           UUID            CONSTRAINT fk_goods_inspections_assignment_id_driver_assignments
                                                    REFERENCES driver_assignments(id) ON DELETE SET NULL,
            driver_id               UUID            CONSTRAINT fk_goods_inspections_driver_id_drivers
                                                    REFERENCES drivers(id) ON DELETE SET NULL,
            branch_id               UUID            CONSTRAINT fk_goods_inspections_branch_id_branches
                                                    REFERENCES branches(id) ON DELETE SET NULL,
            actual_weight_kg        NUMERIC(10, 2)  NOT NULL,
            actual_length_cm        NUMERIC(10, 2),
            actual_width_cm         NUMERIC(10, 2),
            actual_height_cm        NUMERIC(10, 2),
            actual_volume_m3        NUMERIC(10, 3),
            packaging_condition     VARCHAR(30),
            special_handling_flags  VARCHAR(100),
            inspected_by_type       VARCHAR(20),
            inspected_by            VARCHAR(100),
            inspected_at            TIMESTAMPTZ     NOT NULL,
            note                    TEXT,
            created_at              TIMESTAMPTZ     NOT NULL DEFAULT now()
        );
    """)
    op.execute(
        "CREATE INDEX ix_goods_inspections_assignment_id ON goods_inspections (assignment_id);"
    )
    op.execute("CREATE INDEX ix_goods_inspections_driver_id ON goods_inspections (driver_id);")
    op.execute("CREATE INDEX ix_goods_inspections_branch_id ON goods_inspections (branch_id);")

    op.execute("""
        CREATE TABLE warehouse_scans (
            id              UUID            CONSTRAINT pk_warehouse_scans PRIMARY KEY,
            shipment_id     UUID            NOT NULL
                                            CONSTRAINT fk_warehouse_scans_shipment_id_shipments
                                            REFERENCES shipments(id) ON DELETE CASCADE,
            branch_id       UUID            NOT NULL
                                            CONSTRAINT fk_warehouse_scans_branch_id_branches
                                            REFERENCES branches(id) ON DELETE CASCADE,
            warehouse_role  VARCHAR(20)     NOT NULL,
            scan_type       VARCHAR(20)     NOT NULL,
            scanned_by_type VARCHAR(20),
            scanned_by      VARCHAR(100),
            scanned_at      TIMESTAMPTZ     NOT NULL,
            CONSTRAINT uq_warehouse_scans_natural_key
                UNIQUE (shipment_id, branch_id, warehouse_role, scan_type)
        );
    """)
    op.execute("CREATE INDEX ix_warehouse_scans_shipment_id ON warehouse_scans (shipment_id);")
    op.execute("CREATE INDEX ix_warehouse_scans_branch_id   ON warehouse_scans (branch_id);")


def downgrade() -> None:
    for table in (
        "warehouse_scans",
        "goods_inspections",
        "call_logs",
        "pickup_schedule_history",
        "pickup_schedules",
        "admin_task_events",
        "admin_tasks",
        "return_event_log",
        "return_policy_holds",
        "return_orders",
        "transit_manifest_events",
        "transit_manifest_items",
        "transit_manifests",
        "payment_event_log",
        "payment_intents",
        "driver_assignment_history",
        "driver_assignments",
        "shipment_vehicle_assignment_logs",
        "capacity_reservations",
        "vehicle_load_tracking",
        "shipment_status_history",
        "shipments",
        "drivers",
        "vehicles",
        "branches",
    ):
        op.execute(f"DROP TABLE IF EXISTS {table};")
