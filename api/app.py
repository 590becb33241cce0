"""
AgentFlow API - Flask application exposing workflow state, agent registration
and the worker callback entry points.
"""

import logging
import os

from flask import Flask, jsonify, request

from agentflow import (
    Agent,
    AgentBusyError,
    AgentNotFoundError,
    EngineConfig,
    Scheduler,
    Task,
    TaskNotFoundError,
    WorkflowNotFoundError,
    WorkflowValidationError,
    create_default_agent,
    workflow_from_dict,
)

logger = logging.getLogger(__name__)

ENDPOINTS = {
    "health": "/",
    "agents": "/api/agents",
    "workflows": "/api/workflows",
    "tasks": "/api/tasks/<task_id>",
    "metrics": "/api/metrics",
}


def create_app(scheduler: Scheduler | None = None, config: EngineConfig | None = None):
    """
    Application factory for the Flask app.

    Args:
        scheduler: Scheduler to expose. Built from config if None.
        config: Engine configuration used when building a scheduler.
    """
    app = Flask(__name__)
    scheduler = scheduler or Scheduler(config=config or EngineConfig())
    app.extensions["agentflow"] = scheduler

    def error(message, status):
        return jsonify({"success": False, "error": message}), status

    @app.route("/", methods=["GET"])
    def health():
        """Health check endpoint."""
        return jsonify({
            "status": "healthy",
            "service": "AgentFlow",
            "version": "1.0.0",
            "endpoints": ENDPOINTS,
        })

    # =============================
    # AGENTS
    # =============================

    @app.route("/api/agents", methods=["GET", "POST"])
    def agents():
        """
        GET: Registered agents with live load and performance score.
        POST: Register an agent.

        POST Body (JSON), either a profile:
            - agent_type: str (e.g. "test-architect")
            - id: str (optional, defaults to the profile name)
        or an explicit record:
            - id: str (required)
            - capabilities: list[str]
            - capacity: int (default: 1)
            - base_priority: int 1-10 (default: 5)
        """
        if request.method == "GET":
            return jsonify({"success": True, "agents": scheduler.get_agent_overview()})

        data = request.get_json(silent=True)
        if not data:
            return error("Request body is required", 400)

        try:
            if data.get("agent_type") and not data.get("capabilities"):
                agent = create_default_agent(data["agent_type"], data.get("id"))
            else:
                agent = Agent.from_dict(data)
        except (TypeError, ValueError) as e:
            return error(str(e), 400)

        scheduler.register_agent(agent)
        return jsonify({"success": True, "agent": agent.to_dict()}), 201

    @app.route("/api/agents/<agent_id>", methods=["DELETE"])
    def deregister_agent(agent_id):
        """Deregister an agent. Pass ?force=true to cancel its running tasks."""
        force = request.args.get("force", "false").lower() == "true"
        try:
            scheduler.deregister_agent(agent_id, force=force)
        except AgentNotFoundError as e:
            return error(str(e), 404)
        except AgentBusyError as e:
            return error(str(e), 409)
        return jsonify({"success": True, "message": f"Agent {agent_id} deregistered"})

    @app.route("/api/agents/<agent_id>/report", methods=["GET"])
    def agent_report(agent_id):
        """Performance report with recommendations."""
        try:
            report = scheduler.metrics.performance_report(agent_id)
        except AgentNotFoundError as e:
            return error(str(e), 404)
        return jsonify({"success": True, "report": report})

    # =============================
    # WORKFLOWS
    # =============================

    @app.route("/api/workflows", methods=["GET", "POST"])
    def workflows():
        """
        GET: Ids of submitted workflows.
        POST: Submit a workflow.

        POST Body (JSON):
            - id: str (optional)
            - name: str (optional)
            - tasks: list of {id, type, priority, dependencies, payload, ...}

        Returns:
            201 with the workflow id, or 400 with the full list of errors.
        """
        if request.method == "GET":
            return jsonify({"success": True, "workflows": scheduler.workflow_ids()})

        data = request.get_json(silent=True)
        if not data:
            return error("Request body is required", 400)

        try:
            workflow = workflow_from_dict(data)
            workflow_id = scheduler.submit(workflow)
        except WorkflowValidationError as e:
            return jsonify({"success": False, "error": "Invalid workflow", "errors": e.errors}), 400
        except (TypeError, ValueError) as e:
            return error(str(e), 400)

        return jsonify({"success": True, "workflow_id": workflow_id}), 201

    @app.route("/api/workflows/<workflow_id>", methods=["GET"])
    def workflow_state(workflow_id):
        """Tasks, edges, layout positions and status counts."""
        try:
            return jsonify({"success": True, "workflow": scheduler.workflow_state(workflow_id)})
        except WorkflowNotFoundError as e:
            return error(str(e), 404)

    @app.route("/api/workflows/<workflow_id>/tasks", methods=["POST"])
    def add_task(workflow_id):
        """Add a task to a running workflow."""
        data = request.get_json(silent=True)
        if not data:
            return error("Request body is required", 400)
        try:
            scheduler.add_task(workflow_id, Task.from_dict(data))
        except WorkflowNotFoundError as e:
            return error(str(e), 404)
        except WorkflowValidationError as e:
            return jsonify({"success": False, "error": "Invalid workflow", "errors": e.errors}), 400
        except (TypeError, ValueError) as e:
            return error(str(e), 400)
        return jsonify({"success": True, "task": scheduler.get_task(data["id"]).to_dict()}), 201

    # =============================
    # TASKS AND WORKER CALLBACKS
    # =============================

    @app.route("/api/tasks/<task_id>", methods=["GET"])
    def get_task(task_id):
        try:
            return jsonify({"success": True, "task": scheduler.get_task(task_id).to_dict()})
        except TaskNotFoundError as e:
            return error(str(e), 404)

    @app.route("/api/tasks/<task_id>/cancel", methods=["POST"])
    def cancel_task(task_id):
        """Cancel a task and its dependents."""
        try:
            scheduler.cancel(task_id)
        except TaskNotFoundError as e:
            return error(str(e), 404)
        return jsonify({"success": True, "task": scheduler.get_task(task_id).to_dict()})

    @app.route("/api/tasks/<task_id>/<report>", methods=["POST"])
    def worker_report(task_id, report):
        """
        Worker backend callbacks.

        POST /complete  {"result": ...}
        POST /fail      {"error": "..."}
        POST /cancelled
        POST /progress  {"progress": 0-100}
        """
        data = request.get_json(silent=True) or {}
        try:
            scheduler.get_task(task_id)
        except TaskNotFoundError as e:
            return error(str(e), 404)

        if report == "complete":
            scheduler.report_completion(task_id, data.get("result"))
        elif report == "fail":
            scheduler.report_failure(task_id, data.get("error") or "Unknown error")
        elif report == "cancelled":
            scheduler.report_cancelled(task_id)
        elif report == "progress":
            try:
                scheduler.report_progress(task_id, data.get("progress"))
            except (TypeError, ValueError):
                return error("progress must be a number between 0 and 100", 400)
        else:
            return error(f"Unknown report: {report}", 404)

        return jsonify({"success": True, "task": scheduler.get_task(task_id).to_dict()})

    # =============================
    # TELEMETRY
    # =============================

    @app.route("/api/metrics", methods=["GET"])
    def metrics():
        """Load gauge, queue status and per-agent performance scores."""
        return jsonify({
            "success": True,
            "load": scheduler.get_load_metrics(),
            "queue": scheduler.get_queue_status(),
            "performance_scores": scheduler.metrics.scores(),
        })

    @app.errorhandler(404)
    def not_found(e):
        """Handle 404 errors."""
        return jsonify({
            "error": "Not Found",
            "message": "The requested endpoint does not exist",
            "available_endpoints": list(ENDPOINTS.values()),
        }), 404

    @app.errorhandler(500)
    def internal_error(e):
        """Handle 500 errors."""
        logger.error(f"Unhandled error: {e}")
        return jsonify({
            "error": "Internal Server Error",
            "message": "An unexpected error occurred",
        }), 500

    return app


# Create the app instance for Gunicorn
app = create_app()


if __name__ == "__main__":
    logging.basicConfig(
        level=app.extensions["agentflow"].config.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    port = int(os.environ.get("PORT", 5000))
    debug = os.environ.get("FLASK_DEBUG", "false").lower() == "true"
    app.run(host="0.0.0.0", port=port, debug=debug)
