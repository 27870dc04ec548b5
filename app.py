from flask import Flask, request, jsonify
import os
import logging
from datetime import datetime
from flask_cors import CORS

import analyze_exceptions
import apply_corrections
from record_store import RecordStoreUnavailable

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s | %(levelname)-8s | %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)


app = Flask(__name__)
CORS(app, resources={
    r"/api/*": {
        "origins": ["*"],
        "methods": ["GET", "POST", "OPTIONS"],
        "allow_headers": ["Content-Type", "Authorization"],
        "supports_credentials": True
    }
})


@app.route('/')
def home():
    return jsonify({
        "message": "Invoice Exception Resolution API",
        "version": "1.0",
        "available_endpoints": {
            "/api/health": "GET - Service health and configuration",
            "/api/exceptions/analyze": "POST - Diagnose exception-flagged invoices with Claude",
            "/api/exceptions/plan-updates": "POST - Build the update plan from analysis results",
            "/api/exceptions/apply-updates": "POST - Apply planned corrections with guarded writes",
            "/api/exceptions/cleanup": "POST - Delete previously generated data and downloads"
        }
    })


@app.route('/api/health', methods=['GET'])
def health():
    status = analyze_exceptions.health_check()
    status["timestamp"] = datetime.utcnow().isoformat()
    return jsonify(status), 200 if status["healthy"] else 503


def _request_data():
    data = request.get_json(silent=True)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValueError("Request body must be a JSON object")
    return data


def _respond(result):
    if result["success"]:
        return jsonify(result), 200
    return jsonify(result), 400


@app.route('/api/exceptions/analyze', methods=['POST'])
def analyze_exceptions_endpoint():
    """
    Analyze exception-flagged invoices.

    Body: {"records": [...]} or {"group_id": "...", "report_types": [...], "suppliers": [...]},
    plus optional include_pdf_content, download_files, limit, clear_previous_data.
    """
    data = _request_data()
    logger.info(f"Exception analysis requested ({'inline records' if 'records' in data else data.get('group_id')})")
    return _respond(analyze_exceptions.main(data))


@app.route('/api/exceptions/plan-updates', methods=['POST'])
def plan_updates_endpoint():
    """Write the update plan for review without touching the invoices table."""
    data = _request_data()
    data["execute"] = False
    return _respond(apply_corrections.main(data))


@app.route('/api/exceptions/apply-updates', methods=['POST'])
def apply_updates_endpoint():
    """Body: {"mode": "all" | "first", "confidence_threshold": 90}"""
    data = _request_data()
    data["execute"] = True
    result = apply_corrections.main(data)
    if result.get("executed") and not result["success"]:
        return jsonify(result), 503
    return _respond(result)


@app.route('/api/exceptions/cleanup', methods=['POST'])
def cleanup_endpoint():
    removed = analyze_exceptions.clear_previous_data()
    return jsonify({"success": True, "removed": removed, "count": len(removed)})


@app.errorhandler(RecordStoreUnavailable)
def record_store_unavailable(error):
    logger.error(f"Record store unavailable: {error}")
    return jsonify({'success': False, 'error': str(error)}), 503

@app.errorhandler(ValueError)
def invalid_request(error):
    return jsonify({'success': False, 'error': str(error)}), 400

@app.errorhandler(404)
def not_found(error):
    return jsonify({'success': False, 'error': 'Endpoint not found'}), 404

@app.errorhandler(405)
def method_not_allowed(error):
    return jsonify({'success': False, 'error': 'Method not allowed'}), 405

@app.errorhandler(500)
def internal_error(error):
    return jsonify({'success': False, 'error': 'Internal server error'}), 500

@app.errorhandler(400)
def bad_request(error):
    return jsonify({'success': False, 'error': 'Bad request - check your JSON format'}), 400

if __name__ == '__main__':
    port = int(os.environ.get('PORT', 8080))
    debug = os.getenv('FLASK_DEBUG', 'False').lower() == 'true'
    app.run(host='0.0.0.0', port=port, debug=debug, use_reloader=True)
