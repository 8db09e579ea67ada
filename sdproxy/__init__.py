"""多后端生图代理：把统一的生图请求分发到本地或云端的各类出图服务。"""

__version__ = "0.1.0"
