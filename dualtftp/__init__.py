VENDOR = "dualtftp"
APPLICATION_NAME = "dualtftp"

__version__ = "0.1.0"
