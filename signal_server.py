# signal_server.py
# --------------------------------------------------------------------
# Room relay: presence events and addressed offer/answer/candidate relay
# --------------------------------------------------------------------
import argparse
import asyncio
import logging
from http import HTTPStatus

from websockets.asyncio.server import serve
from websockets.exceptions import ConnectionClosed

import signals
from mesh_config import configure_logging, relay_config
from mesh_errors import ProtocolError
from room_directory import RoomDirectory
from signals import Envelope

logger = logging.getLogger(__name__)


class SignalServer:
    def __init__(self, directory=None):
        self.directory = directory or RoomDirectory()

    async def handler(self, ws):
        participant = self.directory.connect(ws)
        pid = participant.participant_id
        try:
            await ws.send(signals.encode(Envelope(signals.PEER_ID, participant_id=pid)))
            async for raw in ws:
                await self.on_message(pid, raw)
        except ConnectionClosed:
            pass
        finally:
            await self.directory.disconnect(pid)

    async def on_message(self, pid, raw):
        try:
            msg = signals.decode(raw)
        except ProtocolError as e:
            logger.warning(f"Bad envelope from {pid}: {e}")
            await self.directory.send_to(pid, Envelope(signals.ERROR, reason=str(e)))
            return

        t = msg.kind
        if t == signals.JOIN:
            members = await self.directory.join(pid, msg.room_id, msg.display_name)
            if members is not None:
                await self.directory.send_to(pid, Envelope(
                    signals.JOINED, room_id=msg.room_id, participant_id=pid, members=members))
        elif t == signals.LEAVE:
            await self.directory.leave(pid)
        elif t in signals.NEGOTIATION_KINDS:
            # "from" is always the socket's own id, whatever the client wrote
            if msg.to:
                await self.directory.relay(t, pid, msg.to, msg.payload)
        elif t == signals.CHAT_MESSAGE:
            room_id = self.directory.room_of(pid)
            if room_id:
                await self.directory.broadcast(
                    room_id, Envelope(signals.CHAT_MESSAGE, sender=pid, text=msg.text), exclude={pid})
        else:
            logger.debug(f"Ignoring relay-bound {t} from {pid}")


def health_check(connection, request):
    if request.path == "/test":
        return connection.respond(HTTPStatus.OK, "Server is running\n")
    return None


async def main(host, port):
    server = SignalServer()
    logger.info(f"Signalling server listening on {host}:{port} …")
    async with serve(server.handler, host, port, process_request=health_check):
        await asyncio.Future()        # run forever


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Mesh room signalling relay")
    parser.add_argument("--host", default=relay_config.HOST, help="Interface to bind")
    parser.add_argument("--port", type=int, default=relay_config.PORT, help="Port to listen on")
    args = parser.parse_args()
    configure_logging()
    asyncio.run(main(args.host, args.port))
