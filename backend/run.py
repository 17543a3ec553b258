from fairway import create_app, socketio
from fairway.services.rounds.scheduler import start_reconciler

app = create_app()

if __name__ == '__main__':
    start_reconciler(app)
    # Use SocketIO server to enable websockets in dev
    socketio.run(app, debug=True)
