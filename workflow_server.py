import json
import random
import uuid
from datetime import datetime, timezone

from aiohttp import web
from loguru import logger

API_KEY = "test-api-key"


class WorkflowServer:
    """Simulated workflow server with a webhook, a status endpoint and an executions API.

    Operations run for ``completion_time`` seconds. ``error_rate`` is the chance a
    status check reports a failure and ``fail_next`` makes that many status
    checks answer 503 before behaving normally again. ``malformed_next`` does the
    same with a 200 response whose JSON body cannot be decoded.
    """

    def __init__(
        self,
        completion_time: float = 10.0,
        error_rate: float = 0.1,
        api_key: str = API_KEY,
    ):
        self.completion_time = completion_time
        self.error_rate = error_rate
        self.api_key = api_key
        self.fail_next = 0
        self.malformed_next = 0
        self.include_status_endpoint = True
        self.operations = {}
        self.status_requests = 0
        self.runner = None
        self.app = web.Application()
        self.app.router.add_post("/webhook/long-running", self.handle_long_running)
        self.app.router.add_post("/webhook/sync", self.handle_sync)
        self.app.router.add_post("/webhook/execution", self.handle_execution_webhook)
        self.app.router.add_post("/webhook/report", self.handle_report)
        self.app.router.add_get("/webhook/status/{execution_id}", self.handle_status)
        self.app.router.add_get("/api/v1/executions/{execution_id}", self.handle_execution)
        self.logger = logger

    def start_operation(self) -> str:
        """Registers a new operation as if a webhook had started it and returns its id"""
        execution_id = uuid.uuid4().hex[:12]
        self.operations[execution_id] = datetime.now(timezone.utc)
        return execution_id

    def _take_malformed(self) -> bool:
        if self.malformed_next <= 0:
            return False
        self.malformed_next -= 1
        self.logger.info("Returning malformed JSON body")
        return True

    def _elapsed(self, execution_id: str) -> float:
        return (datetime.now(timezone.utc) - self.operations[execution_id]).total_seconds()

    async def _read_payload(self, request):
        if request.content_type.startswith("multipart/"):
            form = await request.post()
            files = {
                name: {"filename": field.filename, "size": len(field.file.read())}
                for name, field in form.items()
                if isinstance(field, web.FileField)
            }
            data = json.loads(form["data"]) if "data" in form else None
            return {"data": data, "files": files}
        if request.can_read_body:
            return {"data": await request.json(), "files": {}}
        return {"data": None, "files": {}}

    async def handle_sync(self, request):
        payload = await self._read_payload(request)
        self.logger.info("Returning synchronous result")
        return web.json_response({"echo": payload["data"], "files": payload["files"]})

    async def handle_long_running(self, request):
        execution_id = self.start_operation()
        body = {"executionId": execution_id, "status": "running"}
        if self.include_status_endpoint:
            body["statusEndpoint"] = "/webhook/status/{executionId}"
        self.logger.info(f"Started operation {execution_id}")
        return web.json_response(body)

    async def handle_execution_webhook(self, request):
        execution_id = self.start_operation()
        self.logger.info(f"Started execution {execution_id}")
        return web.json_response({"executionId": execution_id})

    async def handle_report(self, request):
        return web.Response(
            body=b"%PDF-1.4 report",
            content_type="application/pdf",
            headers={"Content-Disposition": 'attachment; filename="report.pdf"'},
        )

    async def handle_status(self, request):
        self.status_requests += 1
        execution_id = request.match_info["execution_id"]
        if execution_id not in self.operations:
            return web.json_response(
                {"message": f"Unknown execution {execution_id}"}, status=404
            )

        if self.fail_next > 0:
            self.fail_next -= 1
            self.logger.info("Returning 503 for status check")
            return web.json_response({"message": "Service unavailable"}, status=503)

        if self._take_malformed():
            return web.Response(text="<html>oops", content_type="application/json")

        if random.random() < self.error_rate:
            self.logger.info("Returning error status")
            return web.json_response({"status": "error", "error": "node Transform failed"})

        elapsed = self._elapsed(execution_id)
        if elapsed >= self.completion_time:
            self.logger.info("Returning complete status")
            return web.json_response(
                {"status": "complete", "progress": 1.0, "result": {"executionId": execution_id, "ok": True}}
            )

        progress = round(elapsed / self.completion_time, 3)
        self.logger.info(f"Returning running status (elapsed: {elapsed:.1f}s)")
        return web.json_response({"status": "running", "progress": progress})

    async def handle_execution(self, request):
        if request.headers.get("X-N8N-API-KEY") != self.api_key:
            return web.json_response({"message": "Unauthorized"}, status=401)

        execution_id = request.match_info["execution_id"]
        if execution_id not in self.operations:
            return web.json_response({"message": "Not found"}, status=404)

        if self._take_malformed():
            return web.Response(text="<html>oops", content_type="application/json")

        finished = self._elapsed(execution_id) >= self.completion_time
        run_data = {"Webhook": [{"data": {"main": [[{"json": {"received": True}}]]}}]}
        body = {
            "id": execution_id,
            "finished": finished,
            "mode": "webhook",
            "status": "success" if finished else "running",
            "startedAt": self.operations[execution_id].isoformat(),
            "workflowId": "wf-1",
            "workflowName": "Long running report",
            "workflowData": {"nodes": [{"name": "Webhook"}, {"name": "Build report"}]},
        }
        if finished:
            body["stoppedAt"] = datetime.now(timezone.utc).isoformat()
            run_data["Build report"] = [
                {"data": {"main": [[{"json": {"report": {"rows": 3}}}]]}}
            ]
        body["data"] = {
            "resultData": {"runData": run_data, "lastNodeExecuted": list(run_data)[-1]}
        }
        return web.json_response(body)

    async def start(self, port: int = 8080):
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, "localhost", port)
        await site.start()
        self.logger.info(f"Server started on port {port}")
        return site

    async def stop(self):
        if self.runner is not None:
            await self.runner.cleanup()
            self.runner = None
