"""
RFC 822 serialization of outgoing messages for SendMail/SmartReply/SmartForward.
"""

from email.generator import BytesGenerator
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formatdate, make_msgid
from typing import BinaryIO

from .models import OutgoingMessage


def build_body_text(message: OutgoingMessage, append_quoted: bool) -> str:
    text = message.text or ""
    if append_quoted and message.quoted_text:
        intro = message.intro_text or ""
        text = f"{text}\n\n{intro}\n{message.quoted_text}" if intro else f"{text}\n\n{message.quoted_text}"
    return text


def build_mime(message: OutgoingMessage, append_quoted: bool = True, send_bcc: bool = True):
    """
    Build the MIME tree for ``message``.

    ``append_quoted`` is False for SmartReply/SmartForward: the server appends the
    original itself.  Bcc stays in the headers; EAS strips it before delivery.
    """
    text = build_body_text(message, append_quoted)
    if message.html:
        mime = MIMEMultipart("alternative")
        mime.attach(MIMEText(text, "plain", "utf-8"))
        mime.attach(MIMEText(message.html, "html", "utf-8"))
    else:
        mime = MIMEText(text, "plain", "utf-8")

    timestamp = message.timestamp / 1000 if message.timestamp else None
    mime["Date"] = formatdate(timestamp, localtime=False)
    mime["Message-ID"] = message.message_id or make_msgid()
    mime["From"] = message.from_addr
    mime["To"] = message.to
    if message.cc:
        mime["Cc"] = message.cc
    if send_bcc and message.bcc:
        mime["Bcc"] = message.bcc
    mime["Subject"] = message.subject or ""
    return mime


def write_message(message: OutgoingMessage, out: BinaryIO, append_quoted: bool = True, send_bcc: bool = True):
    mime = build_mime(message, append_quoted, send_bcc)
    BytesGenerator(out, mangle_from_=False).flatten(mime)
