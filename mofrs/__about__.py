__version__ = "0.4.2"
__description__ = "mofrs : Mongo Flask-Restful Resources"
