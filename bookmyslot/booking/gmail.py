from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
import base64
import logging

from googleapiclient.discovery import build
from google.oauth2 import service_account

from .config import BookingConfig, GMAIL_SEND_SCOPE
from .credential_signer import normalize_private_key

logger = logging.getLogger(__name__)


class GmailIntegration:
    """
    Sends mail through the Gmail API as config.mail_sender, using the service account with domain-wide delegation.
    The API client is built on first use so constructing the integration never touches the network.
    """

    SCOPES = [GMAIL_SEND_SCOPE]

    def __init__(self, config: BookingConfig, service=None):
        self._config = config
        self._service = service

    @property
    def service(self):
        if self._service is None:
            self._service = self._authorize()
        return self._service

    @staticmethod
    def create_message(to: str, from_email: str, subject: str, html_body: str, text_body: str = None):
        message = MIMEMultipart('alternative')
        message['to'] = to
        message['from'] = from_email
        message['subject'] = subject

        if text_body:
            message.attach(MIMEText(text_body, 'plain'))
        message.attach(MIMEText(html_body, 'html'))

        # Encode to base64 for Gmail API
        raw = base64.urlsafe_b64encode(message.as_bytes()).decode()
        return {'raw': raw}

    def send_email(self, to: str, subject: str, html_body: str, text_body: str = None):
        """Send one message. Errors from the API client propagate to the caller."""
        message = self.create_message(to, self._config.mail_sender, subject, html_body, text_body)
        sent = self.service.users().messages().send(userId='me', body=message).execute()
        logger.info(f"Email '{subject}' sent, message id {sent.get('id')}")
        return sent

    def _authorize(self):
        info = {
            "type": "service_account",
            "client_email": self._config.service_account_email,
            "private_key": normalize_private_key(self._config.private_key),
            "token_uri": self._config.token_uri,
        }
        creds = service_account.Credentials.from_service_account_info(
                info,
                scopes=self.SCOPES,
                subject=self._config.mail_sender  # Impersonating the business email
            )
        return build("gmail", "v1", credentials=creds, cache_discovery=False)
