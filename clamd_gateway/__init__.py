"""clamd gateway is a REST interface for ClamAV daemon.

The ClamAV daemon (clamd) can be either reached via Unix domain socket
or TCP socket, optionally wrapped in TLS.  This behaviour can be
specified via configuration.

Configuration: all configuration is managed through environment
variables.  All environment variables starting with "CLAMAV_" prefix
are loaded into the application.

No authentication of any type is implemented whatsoever: be sure that
your clamd gateway is adequately protected.

The following variables are accepted:

 - CLAMAV_CLAMD_SOCKET_PATH : application will connect to clamd
    running on Unix socket at path specified.
 - CLAMAV_CLAMD_HOST : application will connect to clamd running on TCP
    socket at host specified; also CLAMAV_CLAMD_PORT is expected
 - CLAMAV_CLAMD_PORT : use with CLAMAV_CLAMD_HOST
 - CLAMAV_CLAMD_TLS : wrap the TCP connection in TLS, optionally
    verifying clamd against CLAMAV_CLAMD_TLS_CA_FILE
 - CLAMAV_CLAMD_DIAL_TIMEOUT, CLAMAV_CLAMD_READ_TIMEOUT,
   CLAMAV_CLAMD_WRITE_TIMEOUT : socket timeouts in seconds
 - CLAMAV_CLAMD_MAX_RETRIES, CLAMAV_CLAMD_MIN_RETRY_BACKOFF,
   CLAMAV_CLAMD_MAX_RETRY_BACKOFF : retry policy on connection failures
 - CLAMAV_CLAMD_CHUNK_SIZE : size of the INSTREAM chunks
 - CLAMAV_REQUEST_TIMEOUT : seconds after which a request to clamd is
    abandoned
 - CLAMAV_INCLUDE_RAW_DATA : include clamd raw response in scan results

"""
import logging

from flask import Flask, jsonify, request
from flask_swagger import swagger
from werkzeug.exceptions import HTTPException

from .clamd import CancelToken, Clamd, ClamdException, ClamdOptions, \
    ClamdScanStatus, ExchangeCancelled, ProtocolError, TransportError
from .clamd.options import parse_bool

DEFAULT_REQUEST_TIMEOUT = 300  # seconds

##
# Init app and config
##

app = Flask(__name__)

# load all env starting with CLAMAV_ and make them available in
# app.config without CLAMAV_
app.config.from_prefixed_env("CLAMAV")

# fix gunicorn logging
if __name__ != '__main__':
    gunicorn_logger = logging.getLogger('gunicorn.error')
    app.logger.handlers = gunicorn_logger.handlers[:]
    app.logger.setLevel(gunicorn_logger.level)
    app.logger.propagate = False


##
# API
##


@app.route("/api/v1/doc")
def api_doc():
    """OpenAPI spec of the v1 API.
    """
    swag = swagger(app)
    swag['info']['version'] = "1.0"
    swag['info']['title'] = "clamd gateway"
    swag['info']['description'] = \
        "Sandboxed file scanning with ClamAV via REST API"
    return jsonify(swag)


@app.route("/health", methods=["GET"])
@app.route("/api/v1/clamav/ping", methods=["GET"])
def ping():
    """Ping clamav ensuring connection is up.
    ---
    tags:
      - status
    responses:
      200:
        description: Pong
        content: application/json
        schema:
          type: object
          properties:
            status:
              type: string
              description: Status of the ping
              example: OK
            message:
              type: string
              description: Message returned by clamav on ping command
              example: PONG
            attempts:
              type: integer
              description: Connection attempts needed to reach clamav
            error:
              type: string
              description: Error occurred, if any
      503:
        description: clamav is not reachable or did not reply PONG
    """
    app.logger.debug("Pinging clamd...")
    try:
        pong = clamd_instance().ping(cancel=request_cancel_token())
    except ProtocolError as e:
        app.logger.warning("Unexpected ping response: %s", str(e))
        return {"status": "KO", "error": str(e)}, 503
    except (TransportError, ExchangeCancelled) as e:
        app.logger.error("Ping to clamd failed after %s attempt(s): %s",
                         e.attempts, str(e))
        return {"status": "KO", "error": str(e)}, 503
    app.logger.debug("Ping clamd raw response: %s", pong.raw_data)

    return {
        "status": "OK",
        "message": pong.message,
        "attempts": pong.attempts,
    }


@app.route("/api/v1/clamav/scan", methods=["POST"])
def scan_file():
    """Scan a file attached to the request.
    ---
    tags:
      - scan
    parameters:
      - in: formData
        name: file
        description: File to scan
        required: true
    responses:
      200:
        description: Scanning result
        content: application/json
        schema:
          type: object
          properties:
            status:
              type: string
              description: Status of the scanning {OK,FOUND,ERROR}
              example: FOUND
            input_file:
              type: string
              description: Input file that was scanned
              example: myfile.txt
            virus:
              type: string
              description: Virus found, if any
              example: Name-Of-Virus-Found
            error:
              type: string
              description: Error occurred, if any
            file_size:
              type: integer
              description: Size of the file scanned in bytes
              example: 256
            details:
              type: array
              description: Additional lines of details, if any
    """
    if 'file' not in request.files:
        return {"error": "No file attached"}, 400
    file_to_analyze = request.files['file']
    filename = file_to_analyze.filename or ""
    # sanitize filename to prevent log injection
    safe_filename = filename.replace('\r', '').replace('\n', '')

    app.logger.debug("Starting scan for file \"%s\"", safe_filename)
    # the whole stream is read and framed before being sent
    result = clamd_instance().instream(file_to_analyze.stream,
                                       cancel=request_cancel_token())

    # the file pointer is at the end of the stream, so tell() will
    # give us the size in bytes
    file_size = file_to_analyze.stream.tell()
    app.logger.info("Scanned file \"%s\" (%d bytes) with status %s - %s",
                    safe_filename, file_size, result.status.value, result.virus
                    or "no virus")
    app.logger.debug("Scan raw response: %s", result.raw_data)

    # pack the response
    resp_body = {
        "status": result.status.value,
        # the input_file is always "stream" as returned by clamd
        # INSTREAM command, use what the client told us about the file
        # for a more significative response to the user
        "input_file": filename,
        "virus": result.virus,
        "details": result.details,
        "error": result.err_msg,
        "file_size": file_size,
    }
    if config_bool("INCLUDE_RAW_DATA"):
        app.logger.warning("Including raw data in scan response. "
                           "Use this option only for debugging")
        resp_body["raw_data"] = result.raw_data

    # decide http status code
    if result.status == ClamdScanStatus.ERROR:
        status_code = 500
        app.logger.error("Detected clamd error: %s", result.err_msg)
    elif result.status == ClamdScanStatus.CLIENT_PARSE_ERROR:
        # this is not a clamd error, but our error in parsing response
        status_code = 500
        app.logger.error("Unable to parse clamd response. Raw response: %s",
                         result.raw_data)
    else:
        status_code = 200

    return resp_body, status_code


@app.route("/api/v1/clamav/stats", methods=["GET"])
def stats():
    """Get clamav stats.
    ---
    tags:
      - status
    responses:
      200:
        description: ClamAV stats
        content: application/json
        schema:
          type: object
          properties:
            message:
              type: string
              description: ClamAV stats message
            details:
              type: array
              description: Additional lines of details, if any
            error:
              type: string
              description: Error occurred, if any
    """
    app.logger.debug("Requesting clamd stats...")
    stats = clamd_instance().stats(cancel=request_cancel_token())
    app.logger.debug("Stats clamd raw response: %s", stats.raw_data)

    return {
        "message": stats.message,
        "details": stats.details,
    }


@app.route("/api/v1/clamav/version", methods=["GET"])
def clamav_version():
    """Get version of connected clamav instance.
    ---
    tags:
      - status
    responses:
      200:
        description: ClamAV version
        content: application/json
        schema:
          type: object
          properties:
            message:
              type: string
              description: ClamAV version message
              example: ClamAV 1.4.2
            details:
              type: array
              description: Additional lines of details, if any
            error:
              type: string
              description: Error occurred, if any
    """
    version = clamd_instance().version(cancel=request_cancel_token())

    return {
        "message": version.message,
        "details": version.details,
    }


@app.route("/api/v1/clamav/versioncommands", methods=["GET"])
def clamav_versioncommands():
    """Get version and supported commands of connected clamav instance.
    ---
    tags:
      - status
    responses:
      200:
        description: ClamAV version and commands
        content: application/json
        schema:
          type: object
          properties:
            version:
              type: string
              description: ClamAV version message
              example: ClamAV 1.4.2
            commands:
              type: array
              description: Commands supported by clamav
              example: [SCAN, INSTREAM, PING]
    """
    resp = clamd_instance().versioncommands(cancel=request_cancel_token())
    version, _, commands = resp.message.partition("| COMMANDS:")

    return {
        "version": version.strip(),
        "commands": commands.split(),
    }


@app.route("/api/v1/clamav/reload", methods=["POST"])
def clamav_reload():
    """Ask clamav to reload its virus databases.
    ---
    tags:
      - admin
    responses:
      200:
        description: Reload requested
        content: application/json
        schema:
          type: object
          properties:
            message:
              type: string
              description: ClamAV reply
              example: RELOADING
    """
    app.logger.info("Requesting clamd database reload")
    resp = clamd_instance().reload(cancel=request_cancel_token())

    return {
        "message": resp.message,
    }


##
# Error handlers
##


@app.errorhandler(HTTPException)
def handle_http_exception(e):
    """Handle an HTTP exception and return JSON.
    """
    str_e = str(e)
    if e.code not in [404, 405, 415]:
        # don't pollute logs, these statuses does not concern us
        app.logger.exception("HTTP exception: %s", str_e)
    return {"error": str_e}, e.code


@app.errorhandler(ClamdException)
def handle_clamd_exception(e):
    """Handle a clamd exception and return JSON.
    """
    str_e = str(e)
    if isinstance(e, ExchangeCancelled):
        app.logger.error("clamd did not reply in time: %s", str_e)
        code = 504
    elif isinstance(e, TransportError):
        app.logger.error("Unable to reach clamd after %s attempt(s): %s",
                         e.attempts, str_e)
        code = 503
    elif isinstance(e, ProtocolError):
        app.logger.error("Unexpected clamd response: %s", str_e)
        code = 502
    else:
        app.logger.exception("clamd exception: %s", str_e)
        code = 500
    return {"error": str_e}, code


@app.errorhandler(Exception)
def handle_exception(e):
    """Handle an generic exception and return JSON.
    """
    str_e = str(e)
    app.logger.exception("Generic exception: %s", str_e)
    return {"error": str_e}, 500


##
# Helpers
##


def clamd_instance() -> Clamd:
    """Get the clamd client of the app, creating it on first use.

    The client holds no connection, so one instance serves all requests.
    """
    clamd = app.extensions.get("clamd")
    if clamd is None:
        # remember, these are env variables prefixed with CLAMAV_
        options = ClamdOptions.from_config(app.config)
        app.logger.info("Using clamd on %s %s", options.network,
                        options.address)
        clamd = app.extensions.setdefault("clamd", Clamd(options))
    return clamd


def request_cancel_token() -> CancelToken:
    """Get a cancel token expiring after the configured request timeout.
    """
    timeout = app.config.get("REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT)
    return CancelToken.with_timeout(float(timeout))


def config_bool(env_name: str) -> bool:
    """Given a config var name, try to parse as boolean.
    """
    return parse_bool(app.config.get(env_name, "false"))


##
# DEV runner
##

if __name__ == "__main__":
    # don't run directly in prod, use a production grade wsgi server
    # like gunicorn
    app.run(host="0.0.0.0", port=8080, debug=True)
