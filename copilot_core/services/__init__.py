"""领域服务：图片分析等需要调用 Provider 的辅助能力。"""
