"""Locust load test suite for the VDRS backend.

Tests three user personas:
- FleetGateway (60%): Posts telemetry batches at high frequency
- FleetDispatcher (30%): Tracks vehicles and looks up nearby traffic
- FleetAnalyst (10%): Reads daily/hourly summaries and store metrics

Target metrics:
- 10,000 records/sec sustained ingestion
- p95 track query latency < 200ms
"""

import random
from datetime import datetime, timedelta, timezone
from locust import task, between, events
from locust.contrib.fasthttp import FastHttpUser

# Taipei area
BASE_LONGITUDE = 121.5654
BASE_LATITUDE = 25.0330
FLEET_SIZE = 500
BATCH_SIZE = 200


# ==================== Test Data Generators ====================

def random_plate() -> str:
    return f"LT-{random.randint(1, FLEET_SIZE):04d}"


def generate_telemetry_record(license_plate: str, when: datetime) -> dict:
    """Generate one realistic telemetry record."""
    speed = max(0.0, random.gauss(45, 25))
    return {
        "license_plate": license_plate,
        "time": when.isoformat(),
        "longitude": BASE_LONGITUDE + random.uniform(-0.1, 0.1),
        "latitude": BASE_LATITUDE + random.uniform(-0.1, 0.1),
        "speed": round(speed, 1),
        "gps_speed": round(speed * random.uniform(0.95, 1.05), 1),
        "direction": round(random.uniform(0, 359.9), 1),
        "rpm": random.randint(700, 3500) if speed > 0 else 750,
        "gps_status": "A",
        "battery_voltage": round(random.uniform(12.2, 14.4), 2),
        "engine_temperature": round(random.uniform(80, 100), 1),
        "fuel_level": random.randint(5, 100),
        "driver_id": f"D{random.randint(1, FLEET_SIZE):04d}",
    }


def generate_telemetry_batch(size: int = BATCH_SIZE) -> list[dict]:
    now = datetime.now(timezone.utc)
    return [
        generate_telemetry_record(random_plate(), now - timedelta(seconds=random.randint(0, 60)))
        for _ in range(size)
    ]


# ==================== User Classes ====================

class FleetGateway(FastHttpUser):
    """Telemetry gateway - high-frequency batch posting.

    Weight: 60% of traffic
    """

    weight = 6
    wait_time = between(0.1, 0.5)

    @task(10)
    def ingest_batch(self):
        """Ingest a telemetry batch - primary task."""
        self.client.post("/api/v1/telemetry/batch", json=generate_telemetry_batch(), name="POST /telemetry/batch")

    @task(1)
    def ingest_anomaly(self):
        payload = [{
            "license_plate": random_plate(),
            "time": datetime.now(timezone.utc).isoformat(),
            "anomaly_type": random.choice(["harsh_braking", "overspeed", "engine_overheat"]),
            "severity": random.choice(["low", "medium", "high", "critical"]),
            "longitude": BASE_LONGITUDE + random.uniform(-0.1, 0.1),
            "latitude": BASE_LATITUDE + random.uniform(-0.1, 0.1),
        }]
        self.client.post("/api/v1/telemetry/anomalies", json=payload, name="POST /telemetry/anomalies")


class FleetDispatcher(FastHttpUser):
    """Dispatcher - follows vehicles and searches around incidents.

    Weight: 30% of traffic
    """

    weight = 3
    wait_time = between(1, 3)

    @task(5)
    def view_track(self):
        self.client.get(
            f"/api/v1/telemetry/vehicle/{random_plate()}/track?limit=500",
            name="GET /telemetry/vehicle/{plate}/track",
        )

    @task(3)
    def find_nearby(self):
        longitude = BASE_LONGITUDE + random.uniform(-0.05, 0.05)
        latitude = BASE_LATITUDE + random.uniform(-0.05, 0.05)
        self.client.get(
            f"/api/v1/telemetry/nearby?longitude={longitude}&latitude={latitude}&radius=2000",
            name="GET /telemetry/nearby",
        )

    @task(2)
    def realtime_summary(self):
        self.client.get("/api/v1/telemetry/realtime-summary", name="GET /telemetry/realtime-summary")


class FleetAnalyst(FastHttpUser):
    """Analyst - summary reads served by rollups.

    Weight: 10% of traffic
    """

    weight = 1
    wait_time = between(3, 8)

    @task(3)
    def vehicle_daily(self):
        today = datetime.now(timezone.utc).date()
        start = today - timedelta(days=7)
        self.client.get(
            f"/api/v1/telemetry/analytics/vehicle-daily?start_date={start}&end_date={today}",
            name="GET /telemetry/analytics/vehicle-daily",
        )

    @task(2)
    def vehicle_hourly(self):
        now = datetime.now(timezone.utc).replace(microsecond=0, tzinfo=None)
        start = now - timedelta(hours=6)
        self.client.get(
            f"/api/v1/telemetry/analytics/vehicle-hourly?start_time={start.isoformat()}"
            f"&end_time={now.isoformat()}&license_plate={random_plate()}",
            name="GET /telemetry/analytics/vehicle-hourly",
        )

    @task(1)
    def performance_metrics(self):
        self.client.get("/api/v1/telemetry/performance/metrics", name="GET /telemetry/performance/metrics")


# ==================== Event Handlers ====================

@events.test_start.add_listener
def on_test_start(environment, **kwargs):
    """Print test configuration at start."""
    print("\n" + "="*80)
    print("VDRS Load Test Starting")
    print("="*80)
    print(f"Target host: {environment.host}")
    print(f"User classes: FleetGateway (60%), FleetDispatcher (30%), FleetAnalyst (10%)")
    print(f"Batch size: {BATCH_SIZE} records, fleet size: {FLEET_SIZE} vehicles")
    print("="*80 + "\n")


@events.test_stop.add_listener
def on_test_stop(environment, **kwargs):
    """Print test summary at completion."""
    print("\n" + "="*80)
    print("VDRS Load Test Complete")
    print("="*80)

    stats = environment.stats
    print(f"Total requests: {stats.total.num_requests}")
    print(f"Total failures: {stats.total.num_failures}")
    print(f"Average response time: {stats.total.avg_response_time:.2f}ms")
    print(f"Requests/sec: {stats.total.total_rps:.2f}")

    if stats.total.num_requests > 0:
        print(f"\nResponse Time Percentiles:")
        print(f"  50th: {stats.total.get_response_time_percentile(0.5):.2f}ms")
        print(f"  95th: {stats.total.get_response_time_percentile(0.95):.2f}ms")
        print(f"  99th: {stats.total.get_response_time_percentile(0.99):.2f}ms")

    print("="*80 + "\n")
