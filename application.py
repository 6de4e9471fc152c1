from flask import Flask, jsonify, request

from risk_analytics.exception import FeatureValidationError, RulesetConfigError
from risk_analytics.logger import logging
from risk_analytics.ruleset import DEFAULT_RULESET, load_bundled_ruleset
from risk_analytics.services.scoring_service import score_batch_records, score_feature_record


CONTRACT_VERSION = "v1"

application = Flask(__name__)
app = application


def _error(message, status_code, **extra):
    body = {"status": "error", "message": message, "contract_version": CONTRACT_VERSION}
    body.update(extra)
    return jsonify(body), status_code


@app.route("/health")
def health():
    try:
        ruleset = load_bundled_ruleset(DEFAULT_RULESET)
    except RulesetConfigError as e:
        return _error(str(e), 503)
    return jsonify(
        {
            "status": "ok",
            "ruleset_name": ruleset.name,
            "ruleset_version": ruleset.version,
            "contract_version": CONTRACT_VERSION,
        }
    )


## Score a batch of entities from their raw event rows
@app.route("/api/score/batch", methods=["POST"])
def score_batch():
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        return _error("Request body must be a JSON object", 400)
    if "entities" not in payload:
        return _error("Field 'entities' is required", 400)

    try:
        envelope = score_batch_records(
            payload.get("entities"),
            payload.get("events", []),
            payload.get("options"),
        )
    except RulesetConfigError as e:
        logging.error(f"Ruleset rejected: {e}")
        return _error(str(e), 400)
    except ValueError as e:
        return _error(str(e), 400)

    envelope["contract_version"] = CONTRACT_VERSION
    status_code = 422 if envelope["status"] in ("error", "failed") else 200
    return jsonify(envelope), status_code


## Score one precomputed feature vector
@app.route("/api/score/features", methods=["POST"])
def score_features_endpoint():
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict) or not isinstance(payload.get("features"), dict):
        return _error("Field 'features' must be an object", 400)

    ruleset_name = str(payload.get("ruleset") or DEFAULT_RULESET)
    try:
        ruleset = load_bundled_ruleset(ruleset_name) if ruleset_name.isidentifier() else None
        if ruleset is None:
            return _error("Field 'ruleset' must be the name of a bundled ruleset", 400)
        result = score_feature_record(payload["features"], payload.get("attributes"), ruleset=ruleset)
    except (FeatureValidationError, RulesetConfigError) as e:
        return _error(str(e), 400)

    result["status"] = "ok"
    result["contract_version"] = CONTRACT_VERSION
    return jsonify(result)


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=5001, debug=True)
