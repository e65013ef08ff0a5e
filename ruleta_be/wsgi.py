from ruleta_be.app import create_app

# Create the app instance for Gunicorn/uWSGI or direct run
app, socketio = create_app()

if __name__ == '__main__':
    # debug is controlled by FLASK_DEBUG in Config
    socketio.run(app, host='0.0.0.0', port=5000, debug=app.debug, allow_unsafe_werkzeug=app.debug)
