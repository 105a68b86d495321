import json
import os
import re
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple
from urllib.parse import quote_plus

from bson import ObjectId
from bson.errors import InvalidId
from dotenv import load_dotenv
from flask import Flask, jsonify, request
from flask_cors import CORS
from flask_jwt_extended import (
    JWTManager,
    create_access_token,
    get_jwt_identity,
    jwt_required,
)
from flask_pymongo import PyMongo
from pymongo.errors import PyMongoError
from werkzeug.middleware.proxy_fix import ProxyFix

load_dotenv()

DATABASE_NAME = "xtraEquip"
ROLE_FIELD = "userRole"
DEFAULT_USER_ROLE = "buyer"
ACCESS_TOKEN_LIFETIME = timedelta(hours=10)
FALSY_ENV_VALUES = {"0", "false", "no", "off"}
LEADING_INTEGER = re.compile(r"\s*([+-]?\d+)")


def build_mongo_uri() -> str:
    """Resolve the connection string from ``MONGO_URI`` or the Atlas credential triple."""
    explicit_uri = (os.getenv("MONGO_URI") or "").strip()
    if explicit_uri:
        return explicit_uri

    db_user = (os.getenv("DB_USER") or "").strip()
    db_password = os.getenv("DB_PWD") or ""
    cluster_url = (os.getenv("DB_CLUSTER_URL") or "").strip()
    if db_user and cluster_url:
        return (
            f"mongodb+srv://{quote_plus(db_user)}:{quote_plus(db_password)}@{cluster_url}"
            f"/{DATABASE_NAME}?retryWrites=true&w=majority"
        )

    return f"mongodb://localhost:27017/{DATABASE_NAME}"


def env_flag(name: str, default: bool) -> bool:
    raw_value = os.getenv(name)
    if raw_value is None or not raw_value.strip():
        return default
    return raw_value.strip().lower() not in FALSY_ENV_VALUES


def create_app(test_config: Optional[Dict] = None, database=None) -> Flask:
    """Create and configure the Flask application.

    ``database`` lets callers hand in an already opened database handle
    (tests pass a mongomock database); otherwise Flask-PyMongo connects
    using ``MONGO_URI``.
    """
    app = Flask(__name__)

    # Honor proxy headers when deployed behind a load balancer.
    trusted_proxy_hops_raw = os.getenv("TRUSTED_PROXY_HOPS", "1")
    try:
        trusted_proxy_hops = max(0, int(trusted_proxy_hops_raw))
    except (TypeError, ValueError):
        trusted_proxy_hops = 1
    if trusted_proxy_hops:
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=trusted_proxy_hops,
            x_proto=trusted_proxy_hops,
            x_host=trusted_proxy_hops,
            x_port=trusted_proxy_hops,
        )

    # --- Configuration ---
    app.config["JWT_SECRET_KEY"] = (
        os.getenv("ACCESS_TOKEN")
        or os.getenv("JWT_SECRET_KEY")
        or "change-me-in-production"
    )
    app.config["JWT_ACCESS_TOKEN_EXPIRES"] = ACCESS_TOKEN_LIFETIME
    app.config["JWT_IDENTITY_CLAIM"] = "email"
    # The scheme is stripped in normalize_authorization_header below.
    app.config["JWT_HEADER_TYPE"] = ""
    app.config["MONGO_URI"] = build_mongo_uri()
    app.config["UPSERT_ON_UPDATE"] = env_flag("UPSERT_ON_UPDATE", True)
    app.config["LOG_LEVEL"] = (os.getenv("LOG_LEVEL") or "INFO").strip().upper()

    if test_config:
        app.config.update(test_config)

    app.logger.setLevel(app.config["LOG_LEVEL"])

    # --- Initialize extensions ---
    allowed_origins = []
    cors_extra = os.getenv("CORS_ALLOWED_ORIGINS", "")
    if cors_extra:
        for origin in cors_extra.split(","):
            trimmed = origin.strip()
            if trimmed:
                allowed_origins.append(trimmed)

    CORS(app, origins=allowed_origins or "*")

    jwt = JWTManager(app)

    if database is None:
        mongo = PyMongo(app)
        database = mongo.db if mongo.db is not None else mongo.cx[DATABASE_NAME]
    db = database

    users_collection = db.users
    products_collection = db.products
    categories_collection = db.categories

    district_names_path = os.path.join(app.root_path, "data", "bd", "districtNames.json")
    with open(district_names_path, encoding="utf-8") as district_file:
        bd_district_names = json.load(district_file)

    # --- Token verification responses ---

    @jwt.unauthorized_loader
    def missing_token_response(reason: str):
        return jsonify({"message": "Unauthorized access"}), 401

    @jwt.invalid_token_loader
    def invalid_token_response(reason: str):
        app.logger.debug("Rejected bearer token: %s", reason)
        return jsonify({"message": "Forbidden access"}), 403

    @jwt.expired_token_loader
    def expired_token_response(jwt_header, jwt_payload):
        return jsonify({"message": "Forbidden access"}), 403

    @app.before_request
    def normalize_authorization_header():
        # Any scheme (or none) is accepted; the token is the last segment.
        authorization = request.headers.get("Authorization", "").strip()
        if authorization:
            request.environ["HTTP_AUTHORIZATION"] = authorization.split()[-1]

    @app.errorhandler(PyMongoError)
    def database_error_response(exc):
        app.logger.exception("Database operation failed: %s", exc)
        return jsonify({"message": "Database operation failed."}), 500

    # --- Helpers ---

    def serialize_document(value):
        if isinstance(value, ObjectId):
            return str(value)
        if isinstance(value, datetime):
            return value.isoformat()
        if isinstance(value, dict):
            return {key: serialize_document(item) for key, item in value.items()}
        if isinstance(value, (list, tuple)):
            return [serialize_document(item) for item in value]
        return value

    def serialize_insert_result(result) -> Dict:
        return {
            "acknowledged": result.acknowledged,
            "insertedId": serialize_document(result.inserted_id),
        }

    def serialize_update_result(result) -> Dict:
        upserted_id = result.upserted_id
        return {
            "acknowledged": result.acknowledged,
            "matchedCount": result.matched_count,
            "modifiedCount": result.modified_count,
            "upsertedCount": 1 if upserted_id is not None else 0,
            "upsertedId": serialize_document(upserted_id),
        }

    def serialize_delete_result(result) -> Dict:
        return {
            "acknowledged": result.acknowledged,
            "deletedCount": result.deleted_count,
        }

    def find_all(collection, query: Dict, limit: int = 0):
        cursor = collection.find(query)
        if limit > 0:
            cursor = cursor.limit(limit)
        return jsonify([serialize_document(document) for document in cursor])

    def parse_object_id(value: str) -> Tuple[Optional[ObjectId], Optional[Tuple]]:
        try:
            return ObjectId(value), None
        except (InvalidId, TypeError):
            return None, (jsonify({"message": "Invalid identifier."}), 400)

    def parse_limit(value: Optional[str]) -> int:
        # Leading digits only, so "10abc" and "2.5" read as 10 and 2.
        match = LEADING_INTEGER.match(str(value or ""))
        return int(match.group(1)) if match else 0

    def read_json_object() -> Optional[Dict]:
        payload = request.get_json(silent=True)
        if payload is None:
            return {}
        return payload if isinstance(payload, dict) else None

    def read_update_fields() -> Optional[Dict]:
        payload = read_json_object()
        if payload is None:
            return None
        # _id is immutable in MongoDB; clients often echo whole documents.
        return {key: value for key, value in payload.items() if key != "_id"}

    def invalid_body_response():
        return jsonify({"message": "Request body must be a JSON object."}), 400

    def get_user_role(user_document) -> Optional[str]:
        if not user_document:
            return None
        return user_document.get(ROLE_FIELD)

    def require_role(role: str):
        current_email = get_jwt_identity()
        current_user = users_collection.find_one({"email": current_email})
        user_role = get_user_role(current_user)

        if user_role == role:
            return current_user, None

        app.logger.warning(
            "Refused %s-only request from %s (role: %s)", role, current_email, user_role
        )
        return None, (jsonify({"message": "Forbidden access"}), 403)

    def role_status(email: str, role: str) -> bool:
        user_document = users_collection.find_one({"email": email})
        return get_user_role(user_document) == role

    # --- ROUTES ---

    @app.route("/")
    def index():
        return "OK", 200

    @app.route("/health")
    def health():
        return {"status": "ok"}, 200

    @app.route("/bd/districtNames", methods=["GET"])
    def list_district_names():
        return jsonify(bd_district_names)

    # Token issuance
    @app.route("/jwt", methods=["GET"])
    def issue_token():
        email = request.args.get("email")
        user = users_collection.find_one({"email": email})

        if not user:
            return jsonify({"message": "Unauthorized access"}), 401

        token = create_access_token(identity=email)
        return jsonify({"accessToken": token})

    # Categories
    @app.route("/categories", methods=["GET"])
    def list_categories():
        limit = parse_limit(request.args.get("limit"))
        return find_all(categories_collection, {}, limit)

    @app.route("/categories/<category_id>", methods=["GET"])
    @jwt_required()
    def list_category_products(category_id: str):
        query = {"category": {"$regex": re.escape(category_id)}, "isSold": False}
        return find_all(products_collection, query)

    # Products
    @app.route("/products", methods=["POST"])
    @jwt_required()
    def create_product():
        _, permission_error = require_role("seller")
        if permission_error:
            return permission_error

        product = read_json_object()
        if product is None:
            return invalid_body_response()

        result = products_collection.insert_one(product)
        return jsonify(serialize_insert_result(result))

    @app.route("/products", methods=["GET"])
    @jwt_required()
    def list_seller_products():
        _, permission_error = require_role("seller")
        if permission_error:
            return permission_error

        seller_email = request.args.get("email")
        return find_all(products_collection, {"sellerEmail": seller_email})

    @app.route("/products/reported", methods=["GET"])
    @jwt_required()
    def list_reported_products():
        _, admin_error = require_role("admin")
        if admin_error:
            return admin_error

        return find_all(products_collection, {"isReported": True})

    @app.route("/products/reported/<product_id>", methods=["DELETE"])
    @jwt_required()
    def delete_reported_product(product_id: str):
        admin_user, admin_error = require_role("admin")
        if admin_error:
            return admin_error

        object_id, id_error = parse_object_id(product_id)
        if id_error:
            return id_error

        result = products_collection.delete_one({"_id": object_id})
        app.logger.info(
            "%s removed reported product %s (deleted: %d)",
            admin_user.get("email"),
            product_id,
            result.deleted_count,
        )
        return jsonify(serialize_delete_result(result))

    @app.route("/products/<product_id>", methods=["DELETE"])
    @jwt_required()
    def delete_product(product_id: str):
        _, permission_error = require_role("seller")
        if permission_error:
            return permission_error

        object_id, id_error = parse_object_id(product_id)
        if id_error:
            return id_error

        seller_email = request.args.get("email")
        result = products_collection.delete_one(
            {"sellerEmail": seller_email, "_id": object_id}
        )
        return jsonify(serialize_delete_result(result))

    # No ownership check: any signed-in user may edit any product.
    @app.route("/products/<product_id>", methods=["PUT"])
    @jwt_required()
    def update_product(product_id: str):
        object_id, id_error = parse_object_id(product_id)
        if id_error:
            return id_error

        update_fields = read_update_fields()
        if update_fields is None:
            return invalid_body_response()

        result = products_collection.update_one(
            {"_id": object_id},
            {"$set": update_fields},
            upsert=app.config["UPSERT_ON_UPDATE"],
        )
        return jsonify(serialize_update_result(result))

    @app.route("/products/advertisement/<product_id>", methods=["PUT"])
    @jwt_required()
    def advertise_product(product_id: str):
        _, permission_error = require_role("seller")
        if permission_error:
            return permission_error

        object_id, id_error = parse_object_id(product_id)
        if id_error:
            return id_error

        seller_email = request.args.get("email")
        result = products_collection.update_one(
            {"sellerEmail": seller_email, "_id": object_id},
            {"$set": {"isAdvertised": True}},
            upsert=app.config["UPSERT_ON_UPDATE"],
        )
        return jsonify(serialize_update_result(result))

    @app.route("/products/advertisement", methods=["GET"])
    def list_advertised_products():
        return find_all(products_collection, {"isAdvertised": True})

    # Users
    @app.route("/users/admin/<email>", methods=["GET"])
    @jwt_required()
    def check_admin(email: str):
        return jsonify({"isAdmin": role_status(email, "admin")})

    @app.route("/users/buyer", methods=["GET"])
    @jwt_required()
    def list_buyers():
        return find_all(users_collection, {ROLE_FIELD: "buyer"})

    @app.route("/users/buyer/<email>", methods=["GET"])
    @jwt_required()
    def check_buyer(email: str):
        return jsonify({"isBuyer": role_status(email, "buyer")})

    @app.route("/users/seller", methods=["GET"])
    @jwt_required()
    def list_sellers():
        return find_all(users_collection, {ROLE_FIELD: "seller"})

    @app.route("/users/seller/<email>", methods=["GET"])
    @jwt_required()
    def check_seller(email: str):
        return jsonify({"isSeller": role_status(email, "seller")})

    @app.route("/users/seller/<user_id>", methods=["PUT"])
    @jwt_required()
    def update_seller(user_id: str):
        admin_user, admin_error = require_role("admin")
        if admin_error:
            return admin_error

        object_id, id_error = parse_object_id(user_id)
        if id_error:
            return id_error

        update_fields = read_update_fields()
        if update_fields is None:
            return invalid_body_response()

        seller_email = request.args.get("email")
        updated_doc = {"$set": update_fields}
        result = users_collection.update_one(
            {"_id": object_id}, updated_doc, upsert=app.config["UPSERT_ON_UPDATE"]
        )

        # Separate write, not atomic with the user update above. Never upserts:
        # a seller without products must not gain a product built from user fields.
        cascade_result = products_collection.update_many(
            {"sellerEmail": seller_email}, updated_doc
        )
        app.logger.info(
            "%s updated user %s (%s); cascaded to %d products",
            admin_user.get("email"),
            user_id,
            seller_email,
            cascade_result.modified_count,
        )

        return jsonify(serialize_update_result(result))

    @app.route("/users/<user_id>", methods=["DELETE"])
    @jwt_required()
    def delete_user(user_id: str):
        admin_user, admin_error = require_role("admin")
        if admin_error:
            return admin_error

        object_id, id_error = parse_object_id(user_id)
        if id_error:
            return id_error

        result = users_collection.delete_one({"_id": object_id})
        app.logger.info(
            "%s deleted user %s (deleted: %d)",
            admin_user.get("email"),
            user_id,
            result.deleted_count,
        )
        return jsonify(serialize_delete_result(result))

    @app.route("/users", methods=["POST"])
    def create_user():
        user = read_json_object()
        if user is None:
            return invalid_body_response()

        if not user.get(ROLE_FIELD):
            user[ROLE_FIELD] = DEFAULT_USER_ROLE

        if users_collection.find_one({"email": user.get("email")}):
            return jsonify({"message": "User already exists!"}), 200

        result = users_collection.insert_one(user)
        app.logger.info("Registered %s as %s", user.get("email"), user[ROLE_FIELD])
        return jsonify(serialize_insert_result(result))

    return app


app = create_app()


if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    app.run(host="0.0.0.0", port=port)
