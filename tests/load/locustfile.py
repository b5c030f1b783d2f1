"""
Load test script for the imgflow task queue.

Simulates a realistic user flow:
  1. Health check
  2. Enqueue a watermark task
  3. Trigger the processor
  4. Poll the task until it finishes
  5. Batch-poll recent tasks by id

Run against a server started with TEST_MODE=true so providers are not billed:
    locust -f tests/load/locustfile.py --host http://localhost:8000

Then open http://localhost:8089 to configure users/spawn rate and start.
"""

import base64
import io
import os
import time

from locust import HttpUser, task, between, SequentialTaskSet
from PIL import Image


# ---------------------------------------------------------------------------
# Configuration, overridable with env vars for different environments
# ---------------------------------------------------------------------------
USER_ID = os.getenv("LOAD_TEST_USER_ID", "user_load-test")
INTERNAL_SECRET = os.getenv("LOAD_TEST_INTERNAL_SECRET", "")


def _sample_image() -> str:
    buf = io.BytesIO()
    Image.new("RGB", (256, 256), (40, 120, 200)).save(buf, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")


SAMPLE_IMAGE = _sample_image()


def auth_headers():
    headers = {"X-User-ID": USER_ID, "X-Correlation-ID": f"load-test-{time.monotonic()}"}
    if INTERNAL_SECRET:
        headers["X-Internal-Secret"] = INTERNAL_SECRET
    return headers


# ---------------------------------------------------------------------------
# Sequential flow: enqueue → trigger → poll
# ---------------------------------------------------------------------------
class WatermarkFlow(SequentialTaskSet):
    """Enqueue a task, nudge the worker and poll until it is terminal."""

    task_id = None

    @task
    def enqueue(self):
        payload = {
            "type": "WATERMARK",
            "inputData": {
                "imageUrl": SAMPLE_IMAGE,
                "watermarkText": "load test",
                "watermarkPosition": "bottom-right",
            },
        }
        with self.client.post(
            "/api/tasks",
            json=payload,
            headers=auth_headers(),
            name="/api/tasks [enqueue]",
            catch_response=True,
        ) as resp:
            if resp.status_code == 200:
                self.task_id = resp.json().get("task", {}).get("id")
                if not self.task_id:
                    resp.failure("No task id in response")
            else:
                resp.failure(f"Enqueue failed: {resp.status_code}")

    @task
    def trigger(self):
        self.client.post(
            "/api/tasks/worker",
            json={"batch": True, "maxTasks": 5},
            headers=auth_headers(),
            name="/api/tasks/worker",
        )

    @task
    def poll(self):
        if not self.task_id:
            return

        max_polls = 60  # 2 minutes at 2s intervals
        for _ in range(max_polls):
            with self.client.get(
                f"/api/tasks/{self.task_id}",
                headers=auth_headers(),
                name="/api/tasks/[id]",
                catch_response=True,
            ) as resp:
                if resp.status_code != 200:
                    resp.failure(f"Poll error: {resp.status_code}")
                    return

                status = resp.json().get("task", {}).get("status")
                if status == "COMPLETED":
                    resp.success()
                    return
                elif status == "FAILED":
                    resp.failure(f"Task failed: {resp.json()['task'].get('errorMessage', 'unknown')}")
                    return

            time.sleep(2)

    @task
    def stop(self):
        self.interrupt()


# ---------------------------------------------------------------------------
# User class
# ---------------------------------------------------------------------------
class ImgflowUser(HttpUser):
    """Simulates a typical user session."""

    wait_time = between(1, 3)

    @task(3)
    def health_check(self):
        self.client.get("/health", name="/health")

    @task(2)
    def list_tasks(self):
        self.client.get("/api/tasks?limit=20", headers=auth_headers(), name="/api/tasks [list]")

    @task(1)
    def stats(self):
        self.client.get("/api/tasks/stats", headers=auth_headers(), name="/api/tasks/stats")

    @task(1)
    def worker_status(self):
        self.client.get("/api/tasks/worker", headers=auth_headers(), name="/api/tasks/worker [status]")

    tasks = {WatermarkFlow: 1}
