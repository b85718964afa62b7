"""业务记录领域模型。"""
